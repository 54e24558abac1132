from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple, Union

from ChannelSync.identity import handle_key, normalize_handle
from ChannelSync.models import MembershipRow
from ChannelSync.sheet_store import SheetStore, SheetStoreError, data_rows
from ChannelSync.sync_utils import parse_dt_any

log = logging.getLogger("channel-sync")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InviteIssuer(Protocol):
    async def create_chat_invite_link(
        self, chat_id: Union[int, str], *, member_limit: int = 1, expire_date: Optional[int] = None
    ) -> str: ...


def find_active_entry(handle: str, grid: Sequence[Sequence[Any]]) -> Optional[MembershipRow]:
    """Latest-ending ACTIVE row for handle in a raw sheet grid (header optional)."""
    key = handle_key(handle)
    if not key:
        return None
    best: Optional[MembershipRow] = None
    best_end = _EPOCH
    for cells in data_rows(grid):
        row = MembershipRow.from_cells(cells)
        if not row.is_active or handle_key(row.handle) != key:
            continue
        end = parse_dt_any(row.plan_end_date) or _EPOCH
        if best is None or end > best_end:
            best, best_end = row, end
    return best


class AccessGate:
    """Single-use invite links, only for handles with an ACTIVE row in the sheet."""

    def __init__(
        self,
        store: SheetStore,
        telegram: InviteIssuer,
        channel_id: Union[int, str],
        *,
        invite_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.telegram = telegram
        self.channel_id = channel_id
        self.invite_ttl_seconds = max(1, int(invite_ttl_seconds))
        self._clock = clock

    async def _snapshot(self) -> List[List[str]]:
        try:
            return await self.store.read_all()
        except SheetStoreError as e:
            log.error(f"[Gate] Error checking subscription: {e}")
            return []

    async def has_active_subscription(self, handle: str) -> bool:
        return find_active_entry(handle, await self._snapshot()) is not None

    async def check_and_issue(self, handle: str) -> Tuple[bool, Optional[str]]:
        """Returns (active, invite_link). The link is None when inactive or if Telegram refused."""
        entry = find_active_entry(handle, await self._snapshot())
        if entry is None:
            log.info(f"[Gate] No active subscription for {normalize_handle(handle)}")
            return False, None
        expire_date = int(self._clock()) + self.invite_ttl_seconds
        try:
            link = await self.telegram.create_chat_invite_link(
                self.channel_id, member_limit=1, expire_date=expire_date
            )
        except Exception as e:
            log.error(f"[Gate] Error generating invite link for {entry.handle}: {e}")
            return True, None
        log.info(f"[Gate] Invite link issued for {entry.handle} (plan {entry.plan_name}, ends {entry.plan_end_date})")
        return True, link

    async def issue_invite_link(self, handle: str) -> Optional[str]:
        _active, link = await self.check_and_issue(handle)
        return link
