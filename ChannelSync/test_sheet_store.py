import asyncio

import pytest

from ChannelSync.conftest import FakeSheetsService
from ChannelSync.models import SHEET_HEADER, MembershipRow
from ChannelSync.sheet_store import SheetStore, SheetStoreError, col_letter, data_rows

ROWS = [
    MembershipRow("M1", "@alice", "Gold", "ACTIVE", "a@x.com", "2025-01-01", 111),
    MembershipRow("M2", "@bob", "Silver", "EXPIRED", "b@x.com", "2024-06-01", "Unknown"),
]


def test_write_then_read_round_trip(store, sheets):
    assert asyncio.run(store.write_all(ROWS)) == 2
    grid = asyncio.run(store.read_all())
    assert grid[0] == SHEET_HEADER
    assert grid[1:] == [r.to_cells() for r in ROWS]
    assert ("update", "'Members'!A1:G3") in sheets.calls
    assert sheets.update_calls == 1


def test_read_rows_parses_cells(store):
    asyncio.run(store.write_all(ROWS))
    rows = asyncio.run(store.read_rows())
    assert rows == ROWS


def test_empty_write_is_a_noop(store, sheets, caplog):
    sheets.grid = [list(SHEET_HEADER), ROWS[0].to_cells()]
    before = [list(r) for r in sheets.grid]
    with caplog.at_level("ERROR", logger="channel-sync"):
        assert asyncio.run(store.write_all([])) == 0
    assert sheets.grid == before
    assert sheets.calls == []
    assert "empty" in caplog.text


def test_non_rectangular_write_is_rejected(store, sheets):
    bad = [["M1", "@a", "Gold", "ACTIVE", "a@x.com", "2025-01-01", "1"], ["M2", "@b"]]
    assert asyncio.run(store.write_all(bad)) == 0
    assert sheets.calls == []


def test_wrong_width_is_rejected(store, sheets):
    assert asyncio.run(store.write_all([["a", "b", "c"]])) == 0
    assert asyncio.run(store.write_all(["not-a-row"])) == 0
    assert sheets.calls == []


def test_shorter_snapshot_blanks_leftover_rows(store, sheets):
    asyncio.run(store.write_all(ROWS + [MembershipRow("M3", "@carol", "Gold", "ACTIVE", "c@x.com", "N/A", "Unknown")]))
    assert len(sheets.grid) == 4

    asyncio.run(store.write_all(ROWS[:1]))
    assert sheets.grid == [SHEET_HEADER, ROWS[0].to_cells()]
    assert ("update", "'Members'!A1:G4") in sheets.calls


def test_raw_rows_are_accepted(store, sheets):
    asyncio.run(store.write_all([ROWS[0].to_cells()]))
    assert sheets.grid[1] == ROWS[0].to_cells()


def test_transport_failure_raises_store_error(sheets):
    sheets.fail_update = OSError("connection reset")
    store = SheetStore("sheet-123", "Members", service=sheets)
    with pytest.raises(SheetStoreError):
        asyncio.run(store.write_all(ROWS))


def test_missing_credentials():
    store = SheetStore("sheet-123")
    with pytest.raises(SheetStoreError):
        asyncio.run(store.read_all())


def test_col_letter():
    assert col_letter(1) == "A"
    assert col_letter(7) == "G"
    assert col_letter(26) == "Z"
    assert col_letter(27) == "AA"


def test_data_rows_strips_header_and_blanks():
    grid = [list(SHEET_HEADER), ["M1", "@a"], ["", ""], []]
    assert data_rows(grid) == [["M1", "@a"]]
    assert data_rows([["M1", "@a"]]) == [["M1", "@a"]]
    assert data_rows(FakeSheetsService().grid) == []
