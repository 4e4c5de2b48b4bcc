import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable, List, Literal, Optional, Sequence

from doc2sheet.errors import SinkCreateError, SinkWriteError
from doc2sheet.schema import ExtractionResult, SinkResource
from doc2sheet.sheets_client import SheetsBackendError, SheetsClient, a1_range

logger = logging.getLogger(__name__)

PRIMARY_TAB = "Sheet1"
DESCRIPTION_TAB = "Description"
DESCRIPTION_HEADER = "Description"

RaggedPolicy = Literal["pad", "as_is"]


def derive_title(display_name: Optional[str], now: Optional[datetime] = None) -> str:
    """Upload name without its extension, or a timestamped fallback."""
    name = PurePosixPath((display_name or "").replace("\\", "/")).name
    stem = PurePosixPath(name).stem.strip() if name else ""
    if stem:
        return stem
    now = now or datetime.now(timezone.utc)
    return f"Extracted table {now:%Y-%m-%d %H:%M:%S} UTC"


def prepare_rows(grid: Sequence[Sequence[str]], ragged_rows: RaggedPolicy = "pad") -> List[List[str]]:
    rows = [list(row) for row in grid]
    if ragged_rows == "pad":
        width = max((len(row) for row in rows), default=0)
        rows = [row + [""] * (width - len(row)) for row in rows]
    return rows


def commit(
    result: ExtractionResult,
    title: str,
    client: SheetsClient,
    *,
    ragged_rows: RaggedPolicy = "pad",
    on_created: Optional[Callable[[SinkResource], None]] = None,
) -> SinkResource:
    """
    Create one spreadsheet and write the extracted grid into it.

    - Grid goes to the primary tab at A1, row-major, values untouched.
    - A non-blank description goes to its own tab as header row + text row.
    - Creation happens once; a failed write leaves the spreadsheet in place
      and is reported through ``SinkWriteError.resource``.
    - ``on_created`` sees the spreadsheet before any data is written.
    """
    tabs = [PRIMARY_TAB]
    if result.has_description:
        tabs.append(DESCRIPTION_TAB)

    resource = _create(client, title, tabs)
    if on_created:
        on_created(resource)

    writes = [(PRIMARY_TAB, prepare_rows(result.grid, ragged_rows))]
    if result.has_description:
        writes.append((DESCRIPTION_TAB, [[DESCRIPTION_HEADER], [result.description]]))
    _write_all(client, resource, writes)

    logger.info(f"Wrote {len(result.grid)} row(s) to {resource.url}")
    return resource


def commit_many(
    results: Sequence[ExtractionResult],
    title: str,
    client: SheetsClient,
    *,
    ragged_rows: RaggedPolicy = "pad",
) -> SinkResource:
    """One spreadsheet for a whole batch: tab ``Page N`` per result."""
    page_tabs = [f"Page {i}" for i in range(1, len(results) + 1)]
    described = [(tab, r.description) for tab, r in zip(page_tabs, results) if r.has_description]

    tabs = page_tabs + ([DESCRIPTION_TAB] if described else [])
    resource = _create(client, title, tabs)

    writes = [(tab, prepare_rows(r.grid, ragged_rows)) for tab, r in zip(page_tabs, results)]
    if described:
        writes.append((DESCRIPTION_TAB, [["Page", DESCRIPTION_HEADER]] + [list(d) for d in described]))
    _write_all(client, resource, writes)

    logger.info(f"Wrote {len(results)} page(s) to {resource.url}")
    return resource


def _create(client: SheetsClient, title: str, tabs: List[str]) -> SinkResource:
    try:
        resource = client.create_spreadsheet(title, tabs)
    except SheetsBackendError as e:
        raise SinkCreateError(f"Could not create spreadsheet {title!r}: {e}") from e
    logger.info(f"Created spreadsheet {resource.spreadsheet_id} ({title!r})")
    return resource


def _write_all(client: SheetsClient, resource: SinkResource, writes) -> None:
    for tab, rows in writes:
        if not rows:
            continue
        try:
            client.write_values(resource.spreadsheet_id, a1_range(tab), rows)
        except SheetsBackendError as e:
            raise SinkWriteError(
                f"Spreadsheet was created but writing {tab!r} failed: {e}", resource=resource
            ) from e
