from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest
from telegram.error import BadRequest

from ChannelSync.identity import IdentityResolver, ProfileCache
from ChannelSync.identity_directory import IdentityDirectory
from ChannelSync.models import Order
from ChannelSync.reconcile import ReconciliationPipeline
from ChannelSync.sheet_store import SheetStore
from ChannelSync.wix_api_client import WixAPIError


class _Request:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeSheetsService:
    """Just enough of googleapiclient's Sheets v4 resource for spreadsheets().values().get/update."""

    def __init__(self, grid: Optional[List[List[str]]] = None):
        self.grid: List[List[str]] = [list(r) for r in (grid or [])]
        self.calls: List[Tuple[str, str]] = []
        self.fail_get: Optional[Exception] = None
        self.fail_update: Optional[Exception] = None

    def spreadsheets(self):
        return self

    def values(self):
        return self

    def get(self, spreadsheetId: str, range: str):
        def _do():
            self.calls.append(("get", range))
            if self.fail_get:
                raise self.fail_get
            return {"values": [list(r) for r in self.grid]} if self.grid else {"range": range}

        return _Request(_do)

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):
        def _do():
            self.calls.append(("update", range))
            if self.fail_update:
                raise self.fail_update
            values = body["values"]
            grid = [list(r) for r in self.grid]
            while len(grid) < len(values):
                grid.append([])
            for i, row in enumerate(values):
                grid[i] = [str(c) for c in row]
            # Sheets omits trailing empty cells and rows on read.
            grid = [self._rstrip(r) for r in grid]
            while grid and not grid[-1]:
                grid.pop()
            self.grid = grid
            return {"updatedRange": range, "updatedRows": len(values)}

        return _Request(_do)

    @staticmethod
    def _rstrip(row: List[str]) -> List[str]:
        out = list(row)
        while out and out[-1] == "":
            out.pop()
        return out

    @property
    def update_calls(self) -> int:
        return sum(1 for kind, _ in self.calls if kind == "update")


class FakeOrderSource:
    def __init__(self, orders: List[Order], fail_at_offset: Optional[int] = None):
        self.orders = list(orders)
        self.fail_at_offset = fail_at_offset
        self.calls: List[Tuple[int, int]] = []

    async def fetch_orders_page(self, offset: int, limit: int):
        self.calls.append((offset, limit))
        if self.fail_at_offset is not None and offset >= self.fail_at_offset:
            raise WixAPIError("Network error: connection reset", transient=True)
        batch = self.orders[offset : offset + limit]
        return batch, len(batch) == limit


class FakeProfileClient:
    """member_id -> (telegram username or None, email)."""

    def __init__(self, members: Dict[str, Tuple[Optional[str], str]]):
        self.members = dict(members)
        self.calls: List[str] = []

    async def get_member(self, member_id: str) -> Dict[str, Any]:
        self.calls.append(member_id)
        if member_id not in self.members:
            raise WixAPIError(f"member {member_id} not found", status=404)
        username, email = self.members[member_id]
        fields = {"custom.telegram-username": {"value": username}} if username is not None else {}
        return {"member": {"id": member_id, "loginEmail": email, "contact": {"customFields": fields}}}


class FakeTelegram:
    """Stands in for both TelegramChannel and the handlers' context.bot."""

    def __init__(self):
        self.kicked: List[Tuple[Any, int]] = []
        self.fail_kick_for: set[int] = set()
        self.invites: List[Dict[str, Any]] = []
        self.fail_invite = False
        self.sent: List[Tuple[Any, str, Any]] = []
        self.photos: List[Tuple[Any, str, str, Any]] = []
        self.answered: List[str] = []

    async def kick_chat_member(self, chat_id, user_id: int) -> None:
        if user_id in self.fail_kick_for:
            raise BadRequest("User is an administrator of the chat")
        self.kicked.append((chat_id, user_id))

    async def create_chat_invite_link(self, chat_id, *, member_limit: int = 1, expire_date: Optional[int] = None) -> str:
        if self.fail_invite:
            raise BadRequest("Not enough rights to manage chat invite link")
        self.invites.append({"chat_id": chat_id, "member_limit": member_limit, "expire_date": expire_date})
        return f"https://t.me/+invite{len(self.invites)}"

    async def send_message(self, chat_id, text: str, reply_markup: Any = None) -> None:
        self.sent.append((chat_id, text, reply_markup))

    async def send_photo(self, chat_id, photo: str, caption: str = "", reply_markup: Any = None) -> None:
        self.photos.append((chat_id, photo, caption, reply_markup))

    async def answer_callback_query(self, callback_query_id: str, **kwargs: Any) -> bool:
        self.answered.append(callback_query_id)
        return True


def make_order(member_id: str, status: str = "ACTIVE", plan: str = "Gold", end: str = "2025-01-01", oid: str = "") -> Order:
    return Order(
        order_id=oid or f"o-{member_id}",
        buyer_member_id=member_id,
        plan_name=plan,
        status=status,
        current_cycle_end=end,
    )


@pytest.fixture
def sheets() -> FakeSheetsService:
    return FakeSheetsService()


@pytest.fixture
def store(sheets: FakeSheetsService) -> SheetStore:
    return SheetStore("sheet-123", "Members", service=sheets)


@pytest.fixture
def directory(tmp_path) -> IdentityDirectory:
    return IdentityDirectory(tmp_path / "user_directory.json")


@pytest.fixture
def telegram() -> FakeTelegram:
    return FakeTelegram()


@pytest.fixture
def build_pipeline(store, directory, telegram):
    def _build(orders: List[Order], members: Dict[str, Tuple[Optional[str], str]], **kwargs):
        source = FakeOrderSource(orders, fail_at_offset=kwargs.pop("fail_at_offset", None))
        kwargs.setdefault("page_delay_seconds", 0)
        client = FakeProfileClient(members)
        resolver = IdentityResolver(client, ProfileCache(ttl_seconds=3600))
        pipeline = ReconciliationPipeline(
            source,
            resolver,
            directory,
            store,
            telegram,
            -100123,
            **kwargs,
        )
        return pipeline, source, client

    return _build
