from pathlib import Path

from prefect import flow, task, get_run_logger, unmapped
from prefect.cache_policies import NO_CACHE

from doc2sheet.normalize import guess_media_type
from doc2sheet.pipeline import STAGE_LABELS, Pipeline, build_services
from doc2sheet.results import BatchResult, PipelineFailure, PipelineResult, PipelineSuccess
from doc2sheet.schema import InputDocument
from doc2sheet.settings import get_settings


def load_document(path: Path) -> InputDocument:
    return InputDocument(
        data=path.read_bytes(),
        media_type=guess_media_type(path.name),
        display_name=path.name,
    )


def crash_failure(exc: BaseException) -> PipelineFailure:
    """Result for a task that raised instead of returning one."""
    # stage-tagged errors keep their stage; anything else struck before the first stage
    stage = getattr(exc, "stage", "normalize")
    resource = getattr(exc, "resource", None)
    return PipelineFailure(
        stage=stage,
        error_type=type(exc).__name__,
        reason=f"{STAGE_LABELS[stage]} failed: {exc}",
        sheet_url=resource.url if resource else None,
    )


# No task retries anywhere: a retried run could create a second spreadsheet.
@task(retries=0, cache_policy=NO_CACHE)
def t_process_one(path: str, pipeline: Pipeline) -> PipelineResult:
    """
    Best-effort wrapper:
    - never raises for expected pipeline failures; returns a failed result instead
    - an unreadable input file is a normalize failure
    - each stage inside the pipeline is bounded by its own timeout
    """
    logger = get_run_logger()
    try:
        doc = load_document(Path(path))
    except OSError as e:
        logger.error(f"{path}: could not read input: {e}")
        return PipelineFailure(
            stage="normalize",
            error_type=type(e).__name__,
            reason=f"{STAGE_LABELS['normalize']} failed: {e}",
            client_error=True,
        )

    result = pipeline.run(doc)

    if result.status == "ok":
        logger.info(f"{path}: spreadsheet created at {result.sheet_url}")
    else:
        logger.error(f"{path}: {result.reason} (artifact: {result.failure_artifact})")
    return result


@task(retries=0, cache_policy=NO_CACHE)
def t_process_shared(paths: list[str], pipeline: Pipeline) -> BatchResult:
    docs = [load_document(Path(p)) for p in paths]
    return pipeline.run_batch(docs)


@flow(name="doc2sheet", retries=0)
def extraction_flow(path: str) -> PipelineResult:
    logger = get_run_logger()
    logger.info(f"Starting extraction flow for {path}")
    pipeline = Pipeline(build_services())
    return t_process_one(path, pipeline)


@flow(name="doc2sheet-batch")
def extraction_batch_flow(paths: list[str]) -> BatchResult:
    logger = get_run_logger()
    s = get_settings()
    logger.info(f"Starting batch extraction flow. count={len(paths)} sink_mode={s.batch_sink_mode}")
    pipeline = Pipeline(build_services(s))

    if s.batch_sink_mode == "shared":
        batch = t_process_shared(paths, pipeline)
    else:
        futures = t_process_one.map(paths, pipeline=unmapped(pipeline))
        results: list[PipelineResult] = []
        for path, f in zip(paths, futures):
            # Resolve to actual values (not State objects)
            r = f.result(raise_on_failure=False)
            if not isinstance(r, (PipelineSuccess, PipelineFailure)):
                logger.error(f"{path}: task crashed: {r!r}")
                r = crash_failure(r)
            results.append(r)
        batch = BatchResult(results=results)

    logger.info(f"Batch complete. ok={batch.succeeded} failed={batch.failed}")
    return batch


if __name__ == "__main__":
    import sys

    print(extraction_flow(sys.argv[1]))
