import pytest
from prefect.logging import disable_run_logger

from doc2sheet.cli import check_inputs, print_summary
from doc2sheet.errors import SinkWriteError
from doc2sheet.flow import crash_failure, t_process_one
from doc2sheet.results import BatchResult, PipelineFailure, PipelineSuccess
from doc2sheet.schema import SinkResource


def test_check_inputs_rejects_missing_file(tmp_path):
    present = tmp_path / "table.jpg"
    present.write_bytes(b"x")

    assert check_inputs([present]) == [str(present)]
    with pytest.raises(FileNotFoundError):
        check_inputs([present, tmp_path / "missing.pdf"])


def test_print_summary_lists_sheets_and_failures(capsys):
    batch = BatchResult(
        results=[
            PipelineSuccess(
                sheet_url="memory://spreadsheets/abc", message="done", spreadsheet_id="abc", title="a"
            ),
            PipelineFailure(
                stage="extract",
                error_type="SchemaViolation",
                reason="Extracting the table failed: the extraction service did not return a valid table",
                failure_artifact="out/fail/x.json",
            ),
        ]
    )

    print_summary(["a.jpg", "b.pdf"], batch)

    out = capsys.readouterr().out
    assert "Total   : 2" in out
    assert "Success : 1" in out
    assert "Failed  : 1" in out
    assert "- a.jpg: memory://spreadsheets/abc" in out
    assert "- b.pdf [extract] SchemaViolation" in out
    assert "artifact: out/fail/x.json" in out


def test_process_task_reads_and_runs_file(make_pipeline, tmp_path, jpeg_bytes):
    path = tmp_path / "orders.jpg"
    path.write_bytes(jpeg_bytes)

    with disable_run_logger():
        result = t_process_one.fn(str(path), make_pipeline())

    assert result.status == "ok"
    assert result.title == "orders"


def test_process_task_unreadable_file_is_normalize_failure(make_pipeline, tmp_path):
    with disable_run_logger():
        result = t_process_one.fn(str(tmp_path / "gone.pdf"), make_pipeline())

    assert result.status == "failed"
    assert result.stage == "normalize"
    assert result.error_type == "FileNotFoundError"
    assert result.client_error


def test_crash_failure_keeps_stage_of_pipeline_errors():
    resource = SinkResource(spreadsheet_id="abc", title="t", url="memory://spreadsheets/abc")

    assert crash_failure(RuntimeError("worker died")).stage == "normalize"
    failure = crash_failure(SinkWriteError("write failed", resource=resource))
    assert failure.stage == "sink"
    assert failure.error_type == "SinkWriteError"
    assert failure.reason.startswith("Writing the spreadsheet failed")
    assert failure.sheet_url == "memory://spreadsheets/abc"
