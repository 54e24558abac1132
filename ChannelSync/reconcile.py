"""
Reconciliation passes: Wix orders -> Google Sheet -> Telegram channel access.

Three independent passes share one pipeline object:
  * full sync        - rebuild the sheet from every order (startup + daily)
  * handle refresh   - pick up Telegram username changes for rows already in the sheet (hourly)
  * drift correction - remove channel members whose sheet status is not ACTIVE
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple, Union

from ChannelSync.identity import IdentityResolver, handle_key, normalize_handle
from ChannelSync.identity_directory import IdentityDirectory
from ChannelSync.models import UNKNOWN, MembershipRow, Order
from ChannelSync.sheet_store import SheetStore, SheetStoreError

log = logging.getLogger("channel-sync")

FULL_SYNC = "full_sync"
HANDLE_REFRESH = "handle_refresh"
DRIFT_CORRECTION = "drift_correction"


class OrderSource(Protocol):
    async def fetch_orders_page(self, offset: int, limit: int) -> Tuple[List[Order], bool]: ...


class ChannelMembership(Protocol):
    async def kick_chat_member(self, chat_id: Union[int, str], user_id: int) -> None: ...


@dataclass
class SyncReport:
    kind: str
    status: str = "ok"  # ok | empty | skipped | aborted
    orders_fetched: int = 0
    rows_written: int = 0
    skipped: int = 0
    updated: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def summary(self) -> str:
        if self.status == "skipped":
            return f"{self.kind}: skipped (already running)"
        if self.status == "aborted":
            return f"{self.kind}: aborted ({self.error})"
        return (
            f"{self.kind}: {self.status}, orders={self.orders_fetched}, rows_written={self.rows_written}, "
            f"updated={self.updated}, skipped={self.skipped}"
        )


@dataclass
class DriftReport:
    status: str = "ok"  # ok | skipped | aborted
    checked: int = 0
    revoked: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: str = ""

    def summary(self) -> str:
        if self.status == "skipped":
            return "Drift correction skipped (already running)."
        if self.status == "aborted":
            return f"Drift correction aborted: {self.error}"
        return (
            f"Checked {self.checked} inactive member(s): removed {len(self.revoked)}, "
            f"no Telegram ID {len(self.not_found)}, failed {len(self.failed)}."
        )


class ReconciliationPipeline:
    """Owns the sync passes and the guard that keeps them from overlapping."""

    def __init__(
        self,
        order_source: OrderSource,
        resolver: IdentityResolver,
        directory: IdentityDirectory,
        store: SheetStore,
        channel: ChannelMembership,
        channel_id: Union[int, str],
        *,
        include_inactive_orders: bool = True,
        page_size: int = 50,
        page_delay_seconds: float = 1.0,
        max_pages: int = 1000,
    ):
        self.order_source = order_source
        self.resolver = resolver
        self.directory = directory
        self.store = store
        self.channel = channel
        self.channel_id = channel_id
        self.include_inactive_orders = bool(include_inactive_orders)
        self.page_size = max(1, int(page_size))
        self.page_delay_seconds = max(0.0, float(page_delay_seconds))
        self.max_pages = max(1, int(max_pages))
        self._running: Set[str] = set()
        # Full sync and handle refresh both rewrite the sheet.
        self._write_lock = asyncio.Lock()

    def is_running(self, kind: Optional[str] = None) -> bool:
        return bool(self._running) if kind is None else kind in self._running

    def _begin(self, kind: str) -> bool:
        if kind in self._running:
            log.warning(f"[Sync] {kind} trigger skipped: a {kind} pass is already in progress")
            return False
        self._running.add(kind)
        return True

    # -----------------------------
    # Stages
    # -----------------------------
    async def fetch_all_orders(self) -> List[Order]:
        """Page through the order source until a short page. Errors propagate."""
        orders: List[Order] = []
        offset = 0
        for page in range(self.max_pages):
            if page:
                await asyncio.sleep(self.page_delay_seconds)
            log.info(f"[Wix] Fetching orders with offset {offset}...")
            batch, has_more = await self.order_source.fetch_orders_page(offset, self.page_size)
            orders.extend(batch)
            log.info(f"[Wix] Fetched {len(batch)} orders with offset {offset}.")
            if not has_more or len(batch) < self.page_size:
                break
            offset += self.page_size
        else:
            log.warning(f"[Wix] Stopped paging after {self.max_pages} pages")
        log.info(f"[Wix] Total orders fetched: {len(orders)}")
        return orders

    def select_orders(self, orders: Iterable[Order]) -> List[Order]:
        if self.include_inactive_orders:
            return list(orders)
        return [o for o in orders if o.is_active]

    async def build_row(self, order: Order) -> Optional[MembershipRow]:
        """Resolve one order into a sheet row, or None when the order has to be skipped."""
        member_id = order.buyer_member_id
        if not member_id:
            log.info(f"[Sync] Order {order.order_id or '?'} missing memberId, skipping")
            return None
        profile = await self.resolver.resolve_profile(member_id)
        if profile is None:
            return None
        handle = self.resolver.extract_handle(profile)
        telegram_id = self.directory.lookup(handle)
        if telegram_id is None and handle != UNKNOWN:
            log.info(f"[Sync] Telegram ID not found for {handle}")
        return MembershipRow(
            member_id=member_id,
            handle=handle,
            plan_name=order.plan_name,
            status=order.status,
            email=profile.login_email,
            plan_end_date=order.current_cycle_end,
            telegram_id=telegram_id if telegram_id is not None else UNKNOWN,
        )

    # -----------------------------
    # Passes
    # -----------------------------
    async def run_full_sync(self) -> SyncReport:
        report = SyncReport(kind=FULL_SYNC)
        if not self._begin(FULL_SYNC):
            report.status = "skipped"
            return report
        try:
            async with self._write_lock:
                await self._full_sync(report)
        finally:
            self._running.discard(FULL_SYNC)
        log.info(f"[Sync] {report.summary()}")
        return report

    async def _full_sync(self, report: SyncReport) -> None:
        try:
            orders = await self.fetch_all_orders()
        except Exception as e:
            log.error(f"[Sync] Error fetching orders, nothing written: {e}")
            report.status, report.error = "aborted", str(e)
            return
        report.orders_fetched = len(orders)

        selected = self.select_orders(orders)
        if not self.include_inactive_orders:
            log.info(f"[Sync] Active orders: {len(selected)}")

        rows: List[MembershipRow] = []
        for order in selected:
            row = await self.build_row(order)
            if row is None:
                report.skipped += 1
                continue
            rows.append(row)

        if not rows:
            log.warning("[Sync] No rows assembled; leaving the sheet untouched")
            report.status = "empty"
            return
        try:
            report.rows_written = await self.store.write_all(rows)
        except SheetStoreError as e:
            log.error(f"[Sync] Error updating sheet: {e}")
            report.status, report.error = "aborted", str(e)

    async def run_handle_refresh(self) -> SyncReport:
        report = SyncReport(kind=HANDLE_REFRESH)
        if self._write_lock.locked():
            log.warning("[Sync] handle_refresh trigger skipped: a sheet write pass is in progress")
            report.status = "skipped"
            return report
        if not self._begin(HANDLE_REFRESH):
            report.status = "skipped"
            return report
        try:
            async with self._write_lock:
                await self._handle_refresh(report)
        finally:
            self._running.discard(HANDLE_REFRESH)
        log.info(f"[Sync] {report.summary()}")
        return report

    async def _handle_refresh(self, report: SyncReport) -> None:
        try:
            rows = await self.store.read_rows()
        except SheetStoreError as e:
            log.error(f"[Sync] Error reading sheet for handle refresh: {e}")
            report.status, report.error = "aborted", str(e)
            return
        if not rows:
            log.info("[Sync] Sheet is empty; nothing to refresh")
            report.status = "empty"
            return

        try:
            orders = await self.fetch_all_orders()
        except Exception as e:
            log.error(f"[Sync] Error fetching orders for handle refresh: {e}")
            report.status, report.error = "aborted", str(e)
            return
        report.orders_fetched = len(orders)

        in_sheet = {r.member_id for r in rows if r.member_id}
        latest: Dict[str, str] = {}
        for order in orders:
            mid = order.buyer_member_id
            if not mid or mid not in in_sheet or mid in latest:
                continue
            profile = await self.resolver.resolve_profile(mid)
            if profile is None:
                report.skipped += 1
                continue
            latest[mid] = self.resolver.extract_handle(profile)

        refreshed: List[MembershipRow] = []
        for row in rows:
            new_row = self._refresh_row(row, latest.get(row.member_id))
            if new_row != row:
                report.updated += 1
            refreshed.append(new_row)

        if not report.updated:
            return
        try:
            report.rows_written = await self.store.write_all(refreshed)
        except SheetStoreError as e:
            log.error(f"[Sync] Error writing refreshed handles: {e}")
            report.status, report.error = "aborted", str(e)

    def _refresh_row(self, row: MembershipRow, new_handle: Optional[str]) -> MembershipRow:
        handle = row.handle
        telegram_id = row.telegram_id
        if new_handle is not None and handle_key(new_handle) != handle_key(row.handle):
            log.info(f"[Sync] Member {row.member_id} handle changed: {row.handle} -> {new_handle}")
            handle = new_handle
            known = self.directory.lookup(handle)
            telegram_id = known if known is not None else UNKNOWN
        elif telegram_id == UNKNOWN or telegram_id == "":
            known = self.directory.lookup(handle)
            if known is not None:
                telegram_id = known
        return replace(row, handle=handle, telegram_id=telegram_id)

    async def run_drift_correction(self) -> DriftReport:
        report = DriftReport()
        if not self._begin(DRIFT_CORRECTION):
            report.status = "skipped"
            return report
        try:
            await self._drift_correction(report)
        finally:
            self._running.discard(DRIFT_CORRECTION)
        log.info(f"[Drift] {report.summary()}")
        return report

    async def _drift_correction(self, report: DriftReport) -> None:
        try:
            rows = await self.store.read_rows()
        except SheetStoreError as e:
            log.error(f"[Drift] Error reading sheet: {e}")
            report.status, report.error = "aborted", str(e)
            return
        if not rows:
            log.info("[Drift] No data found in the sheet.")
            return

        # A member renewing under a new order keeps an ACTIVE row next to the expired one.
        still_active = {handle_key(r.handle) for r in rows if r.is_active and handle_key(r.handle)}
        handled: Set[str] = set()
        for row in rows:
            key = handle_key(row.handle)
            if not key or row.is_active:
                continue
            if key in still_active or key in handled:
                continue
            handled.add(key)
            report.checked += 1

            handle = normalize_handle(row.handle)
            telegram_id = self.directory.lookup(handle)
            if telegram_id is None and isinstance(row.telegram_id, int):
                telegram_id = row.telegram_id
            if telegram_id is None:
                log.info(f"[Drift] User ID not found for {handle}")
                report.not_found.append(handle)
                continue
            try:
                await self.channel.kick_chat_member(self.channel_id, telegram_id)
            except Exception as e:
                log.error(f"[Drift] Error removing {handle} ({telegram_id}): {e}")
                report.failed.append(handle)
                continue
            log.info(f"[Drift] Removed {handle} ({telegram_id}), status {row.status or '?'}")
            report.revoked.append(handle)
