from datetime import datetime, timezone

import pytest

from doc2sheet.errors import SinkCreateError, SinkWriteError
from doc2sheet.schema import ExtractionResult
from doc2sheet.sheets_client import InMemorySheetsClient
from doc2sheet.sink import DESCRIPTION_TAB, PRIMARY_TAB, commit, commit_many, derive_title, prepare_rows


def test_grid_reads_back_identically(sheets):
    grid = [["a", "b"], ["c", "d"], ["e", "f"]]
    resource = commit(ExtractionResult(grid=grid, description=""), "t", sheets)
    assert sheets.read_values(resource.spreadsheet_id, PRIMARY_TAB) == grid


def test_values_are_written_as_given(sheets):
    grid = [["b", "a"], ["b", "a"], ["0012", "=SUM(A1)", " 3.50 "]]
    resource = commit(ExtractionResult(grid=grid, description=""), "t", sheets, ragged_rows="as_is")
    assert sheets.read_values(resource.spreadsheet_id, PRIMARY_TAB) == grid


def test_description_goes_to_its_own_tab(sheets):
    result = ExtractionResult(grid=[["x"]], description="Quarterly totals")
    resource = commit(result, "Report", sheets)

    assert resource.title == "Report"
    assert sheets.tab_titles(resource.spreadsheet_id) == [PRIMARY_TAB, DESCRIPTION_TAB]
    assert sheets.read_values(resource.spreadsheet_id, DESCRIPTION_TAB) == [
        ["Description"],
        ["Quarterly totals"],
    ]


def test_no_description_tab_without_description(sheets):
    resource = commit(ExtractionResult(grid=[["x"]], description=""), "t", sheets)
    assert sheets.tab_titles(resource.spreadsheet_id) == [PRIMARY_TAB]


def test_ragged_rows_are_padded_by_default():
    assert prepare_rows([["a", "b", "c"], ["d"], []]) == [["a", "b", "c"], ["d", "", ""], ["", "", ""]]


def test_ragged_rows_as_is():
    assert prepare_rows([["a", "b"], ["c"]], "as_is") == [["a", "b"], ["c"]]


def test_create_failure_is_sink_create_error():
    client = InMemorySheetsClient(fail_on_create=True)
    with pytest.raises(SinkCreateError):
        commit(ExtractionResult(grid=[["a"]], description=""), "t", client)
    assert client.spreadsheet_count == 0


def test_write_failure_carries_orphan():
    client = InMemorySheetsClient(fail_on_write=True)
    with pytest.raises(SinkWriteError) as exc:
        commit(ExtractionResult(grid=[["a"]], description=""), "t", client)

    orphan = exc.value.resource
    assert orphan.url.endswith(orphan.spreadsheet_id)
    # created once, left in place
    assert client.spreadsheet_count == 1


def test_commit_many_writes_one_tab_per_page(sheets):
    results = [
        ExtractionResult(grid=[["a"]], description="first"),
        ExtractionResult(grid=[["b", "c"]], description=""),
    ]
    resource = commit_many(results, "batch", sheets)

    assert sheets.spreadsheet_count == 1
    assert sheets.tab_titles(resource.spreadsheet_id) == ["Page 1", "Page 2", DESCRIPTION_TAB]
    assert sheets.read_values(resource.spreadsheet_id, "Page 2") == [["b", "c"]]
    assert sheets.read_values(resource.spreadsheet_id, DESCRIPTION_TAB) == [
        ["Page", "Description"],
        ["Page 1", "first"],
    ]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("invoice.pdf", "invoice"),
        ("scan.final.PNG", "scan.final"),
        ("C:\\Users\\me\\table.jpg", "table"),
        ("dir/sub/report", "report"),
    ],
)
def test_derive_title(name, expected):
    assert derive_title(name) == expected


@pytest.mark.parametrize("name", [None, "", "   "])
def test_derive_title_falls_back_to_timestamp(name):
    now = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
    assert derive_title(name, now) == "Extracted table 2024-05-01 12:30:00 UTC"
