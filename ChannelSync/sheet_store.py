from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from ChannelSync.models import SHEET_HEADER, MembershipRow
from ChannelSync.sync_utils import NO_RETRY, RetryPolicy

log = logging.getLogger("channel-sync")

T = TypeVar("T")

DEFAULT_TAB_NAME = "Φύλλο1"


class SheetStoreError(Exception):
    """Google Sheets call failed (after retries) or the client could not be built."""


def _try_parse_service_account_json(raw: str) -> Optional[dict]:
    s = (raw or "").strip()
    if not s:
        return None
    try:
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        return None


def load_service_account_info(cfg: Dict[str, Any], base_dir: Optional[Path] = None) -> Optional[dict]:
    # 1) dict already
    v = (cfg or {}).get("google_service_account_json")
    if isinstance(v, dict):
        return v

    # 2) inline JSON string
    if isinstance(v, str):
        parsed = _try_parse_service_account_json(v)
        if parsed:
            return parsed

    # 3) explicit file path
    p = str((cfg or {}).get("google_service_account_file") or "").strip()
    if p:
        path = Path(p)
        if not path.is_absolute() and base_dir:
            path = (Path(base_dir) / path).resolve()
        try:
            if path.exists():
                parsed = _try_parse_service_account_json(path.read_text(encoding="utf-8", errors="replace"))
                if parsed:
                    return parsed
        except OSError as e:
            log.warning(f"[Sheets] Could not read service account file {path}: {e}")

    # 4) env JSON
    parsed = _try_parse_service_account_json(os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON", ""))
    if parsed:
        return parsed

    # 5) env key pair
    email = (os.getenv("CLIENT_EMAIL", "") or "").strip()
    key = os.getenv("PRIVATE_KEY", "") or ""
    if email and key.strip():
        return {
            "type": "service_account",
            "client_email": email,
            "private_key": key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }
    return None


def _build_sheets_service(service_account_info: dict):
    from google.oauth2.service_account import Credentials
    from googleapiclient.discovery import build

    scopes = ["https://www.googleapis.com/auth/spreadsheets"]
    creds = Credentials.from_service_account_info(service_account_info, scopes=scopes)
    return build("sheets", "v4", credentials=creds, cache_discovery=False)


def _is_retryable(exc: BaseException) -> bool:
    from googleapiclient.errors import HttpError

    if isinstance(exc, HttpError):
        status = getattr(getattr(exc, "resp", None), "status", None)
        try:
            return int(status) == 429 or int(status) >= 500
        except (TypeError, ValueError):
            return False
    return isinstance(exc, (OSError, TimeoutError))


def col_letter(n: int) -> str:
    """1 -> A, 7 -> G, 27 -> AA."""
    if n < 1:
        raise ValueError("column number must be >= 1")
    out = ""
    while n:
        n, rem = divmod(n - 1, 26)
        out = chr(ord("A") + rem) + out
    return out


def _as_cells(row: Any) -> Optional[List[str]]:
    if isinstance(row, MembershipRow):
        return row.to_cells()
    if isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
        return None
    return ["" if c is None else str(c) for c in row]


def data_rows(grid: Sequence[Sequence[Any]]) -> List[List[str]]:
    """Strip the header row (when present) and fully blank rows from a raw grid."""
    rows = [list(r) for r in (grid or [])]
    if rows:
        first = [str(c).strip().lower() for c in rows[0][: len(SHEET_HEADER)]]
        if first == [h.lower() for h in SHEET_HEADER]:
            rows = rows[1:]
    return [r for r in rows if any(str(c).strip() for c in r)]


class SheetStore:
    """
    Membership table in one Google Sheet tab.

    Writes:
      A: Member ID
      B: Telegram Username
      C: Plan Name
      D: Status
      E: Email
      F: Plan End Date
      G: Telegram ID
    """

    def __init__(
        self,
        spreadsheet_id: str,
        tab_name: str = DEFAULT_TAB_NAME,
        *,
        service_account_info: Optional[dict] = None,
        service: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if not spreadsheet_id:
            raise ValueError("spreadsheet_id is required")
        self.spreadsheet_id = spreadsheet_id
        self.tab_name = tab_name or DEFAULT_TAB_NAME
        self._service_account_info = service_account_info
        self._service = service
        self.retry_policy = retry_policy or NO_RETRY
        # googleapiclient/httplib2 are not reliably thread-safe across concurrent calls.
        self._api_lock: asyncio.Lock = asyncio.Lock()

    def _get_service(self):
        if self._service is not None:
            return self._service
        if not self._service_account_info:
            raise SheetStoreError("missing google service account json/file")
        try:
            self._service = _build_sheets_service(self._service_account_info)
        except ImportError as e:
            raise SheetStoreError(f"missing google libs: {e}") from e
        except Exception as e:
            raise SheetStoreError(f"failed to initialize google sheets client: {e}") from e
        return self._service

    def _range(self, a1: str) -> str:
        return f"'{self.tab_name}'!{a1}"

    async def _call(self, what: str, fn: Callable[[], T]) -> T:
        try:
            async for attempt in self.retry_policy.retrying(_is_retryable):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        log.info(f"[Sheets] Retrying {what} (attempt {attempt.retry_state.attempt_number})")
                    result = await asyncio.to_thread(fn)
            return result
        except Exception as e:
            raise SheetStoreError(f"{what} failed: {e}") from e

    async def _get_values(self, a1: str) -> List[List[str]]:
        service = self._get_service()

        def _do_get() -> Dict[str, Any]:
            return (
                service.spreadsheets()
                .values()
                .get(spreadsheetId=self.spreadsheet_id, range=self._range(a1))
                .execute()
            )

        resp = await self._call("values.get", _do_get)
        values = resp.get("values") if isinstance(resp, dict) else None
        if not isinstance(values, list):
            return []
        return [[str(c) for c in r] for r in values if isinstance(r, list)]

    async def write_all(self, rows: Sequence[Any]) -> int:
        """
        Replace the whole table with header + rows in one update call.

        Returns the number of data rows written; 0 when the input is rejected.
        Raises SheetStoreError if Google rejects the call.
        """
        if not rows:
            log.error(f"[Sheets] Refusing to write empty row set to '{self.tab_name}'")
            return 0
        values = [_as_cells(r) for r in rows]
        if any(v is None for v in values):
            log.error("[Sheets] Refusing to write malformed rows (expected sequences of cells)")
            return 0
        width = len(values[0])
        if any(len(v) != width for v in values):
            log.error("[Sheets] Refusing to write non-rectangular rows")
            return 0
        if width != len(SHEET_HEADER):
            log.error(f"[Sheets] Refusing to write rows of width {width} (header has {len(SHEET_HEADER)} columns)")
            return 0

        service = self._get_service()
        col = col_letter(width)
        grid = [list(SHEET_HEADER)] + values

        async with self._api_lock:
            # Blank out rows left over from a taller previous snapshot in the same call.
            previous = await self._get_values(f"A:{col}")
            if len(previous) > len(grid):
                grid += [[""] * width for _ in range(len(previous) - len(grid))]
            rng = self._range(f"A1:{col}{len(grid)}")

            def _do_update() -> Dict[str, Any]:
                return (
                    service.spreadsheets()
                    .values()
                    .update(
                        spreadsheetId=self.spreadsheet_id,
                        range=rng,
                        valueInputOption="RAW",
                        body={"values": grid},
                    )
                    .execute()
                )

            resp = await self._call("values.update", _do_update)

        updated = resp.get("updatedRows") if isinstance(resp, dict) else None
        log.info(f"[Sheets] Wrote {len(values)} row(s) to {rng} (updatedRows={updated})")
        return len(values)

    async def read_all(self) -> List[List[str]]:
        """Raw A:G grid including the header row."""
        async with self._api_lock:
            return await self._get_values(f"A:{col_letter(len(SHEET_HEADER))}")

    async def read_rows(self) -> List[MembershipRow]:
        return [MembershipRow.from_cells(r) for r in data_rows(await self.read_all())]
