from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

STATUS_ACTIVE = "ACTIVE"
UNKNOWN = "Unknown"
NOT_AVAILABLE = "N/A"

SHEET_HEADER: List[str] = [
    "Member ID",
    "Telegram Username",
    "Plan Name",
    "Status",
    "Email",
    "Plan End Date",
    "Telegram ID",
]

# Column indices in the sheet (A-G).
COL_MEMBER_ID = 0
COL_HANDLE = 1
COL_PLAN_NAME = 2
COL_STATUS = 3
COL_EMAIL = 4
COL_PLAN_END = 5
COL_TELEGRAM_ID = 6


def _dig(obj: Any, *keys: str) -> Any:
    cur = obj
    for k in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(k)
    return cur


@dataclass(frozen=True)
class Order:
    order_id: str
    buyer_member_id: str
    plan_name: str
    status: str
    current_cycle_end: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Order":
        data = data if isinstance(data, dict) else {}
        return cls(
            order_id=str(data.get("id") or data.get("_id") or "").strip(),
            buyer_member_id=str(_dig(data, "buyer", "memberId") or "").strip(),
            plan_name=str(data.get("planName") or "").strip(),
            status=str(data.get("status") or UNKNOWN).strip(),
            current_cycle_end=str(_dig(data, "currentCycle", "endedDate") or NOT_AVAILABLE).strip(),
        )

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class Profile:
    member_id: str
    login_email: str
    custom_fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any], member_id: str = "") -> "Profile":
        """Build from a Wix Members `GET /members/{id}` response (wrapped in `member`)."""
        member = data.get("member") if isinstance(data, dict) else None
        if not isinstance(member, dict):
            raise ValueError("profile response has no 'member' object")
        custom = _dig(member, "contact", "customFields")
        return cls(
            member_id=str(member.get("id") or member_id or "").strip(),
            login_email=str(member.get("loginEmail") or UNKNOWN).strip(),
            custom_fields=custom if isinstance(custom, dict) else {},
        )

    def custom_value(self, key: str) -> Optional[str]:
        entry = self.custom_fields.get(key)
        value = entry.get("value") if isinstance(entry, dict) else entry
        if value is None:
            return None
        s = str(value).strip()
        return s or None


@dataclass(frozen=True)
class MembershipRow:
    member_id: str
    handle: str
    plan_name: str
    status: str
    email: str
    plan_end_date: str
    telegram_id: Union[int, str] = UNKNOWN

    def to_cells(self) -> List[str]:
        return [
            self.member_id,
            self.handle,
            self.plan_name,
            self.status,
            self.email,
            self.plan_end_date,
            str(self.telegram_id),
        ]

    @classmethod
    def from_cells(cls, cells: Sequence[Any]) -> "MembershipRow":
        vals = [str(c if c is not None else "").strip() for c in cells][: len(SHEET_HEADER)]
        vals += [""] * (len(SHEET_HEADER) - len(vals))
        tid: Union[int, str] = vals[COL_TELEGRAM_ID] or UNKNOWN
        if isinstance(tid, str) and tid.lstrip("-").isdigit():
            tid = int(tid)
        return cls(
            member_id=vals[COL_MEMBER_ID],
            handle=vals[COL_HANDLE],
            plan_name=vals[COL_PLAN_NAME],
            status=vals[COL_STATUS],
            email=vals[COL_EMAIL],
            plan_end_date=vals[COL_PLAN_END],
            telegram_id=tid,
        )

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE
