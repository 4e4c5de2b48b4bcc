from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from doc2sheet.errors import (
    BatchDeadlineExceeded,
    PipelineCancelled,
    PipelineError,
    SchemaViolation,
    SinkWriteError,
    Stage,
    UpstreamError,
)
from doc2sheet.extract import extract_table, get_llm_client
from doc2sheet.llm_client import LLMClient
from doc2sheet.normalize import NormalizeOptions, normalize
from doc2sheet.persist_failures import persist_failure
from doc2sheet.results import BatchResult, PipelineFailure, PipelineResult, PipelineSuccess
from doc2sheet.schema import ExtractionResult, InputDocument, SinkResource
from doc2sheet.settings import Settings, get_settings
from doc2sheet.sheets_client import SheetsClient, get_sheets_client
from doc2sheet.sink import commit, commit_many, derive_title

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    "normalize": "Reading the document",
    "extract": "Extracting the table",
    "sink": "Writing the spreadsheet",
}

PHASES = {"normalize": "normalizing", "extract": "extracting", "sink": "sinking"}

ResultCallback = Callable[[int, PipelineResult], None]


@dataclass(frozen=True)
class Services:
    """Service handles built once per process and shared by every run."""

    llm: LLMClient
    sheets: SheetsClient
    normalize_options: NormalizeOptions
    settings: Settings


def build_services(settings: Optional[Settings] = None) -> Services:
    s = settings or get_settings()
    return Services(
        llm=get_llm_client(s),
        sheets=get_sheets_client(s),
        normalize_options=NormalizeOptions.from_settings(s),
        settings=s,
    )


class RunState:
    """received -> normalizing -> extracting -> sinking -> done | failed"""

    def __init__(self, cancel: Optional[threading.Event] = None):
        self.cancel = cancel or threading.Event()
        self.phase = "received"
        self.stage: Stage = "normalize"
        self.resource: Optional[SinkResource] = None
        self._lock = threading.Lock()

    def enter(self, stage: Stage) -> None:
        # stage boundaries are the cancellation points
        with self._lock:
            if self.cancel.is_set():
                raise PipelineCancelled(stage)
            self.stage = stage
            self.phase = PHASES[stage]

    def stop(self) -> Stage:
        """Cancel the run and return the stage it had reached."""
        with self._lock:
            self.cancel.set()
            return self.stage

    def created(self, resource: SinkResource) -> None:
        self.resource = resource


def describe_failure(stage: Stage, e: Exception) -> str:
    label = STAGE_LABELS[stage]
    if isinstance(e, UpstreamError):
        suffix = f" (HTTP {e.status_code})" if e.status_code else ""
        detail = f"the extraction service returned an error{suffix}"
    elif isinstance(e, SchemaViolation):
        detail = "the extraction service did not return a valid table"
    elif isinstance(e, SinkWriteError):
        detail = f"data could not be written; the empty spreadsheet remains at {e.resource.url}"
    elif isinstance(e, BatchDeadlineExceeded) and e.resource:
        detail = f"{e}; the spreadsheet remains at {e.resource.url}"
    elif isinstance(e, PipelineError):
        detail = str(e)
    else:
        detail = "unexpected internal error"
    return f"{label} failed: {detail}"


class Pipeline:
    def __init__(self, services: Services):
        self.services = services

    @property
    def settings(self) -> Settings:
        return self.services.settings

    def run(self, doc: InputDocument, *, cancel: Optional[threading.Event] = None) -> PipelineResult:
        return self._run(doc, RunState(cancel))

    def run_batch(
        self,
        docs: Sequence[InputDocument],
        *,
        on_result: Optional[ResultCallback] = None,
    ) -> BatchResult:
        """
        Run independent pipelines for every document concurrently.

        ``on_result(index, result)`` fires as each item finishes. Items still
        running at the batch deadline are cancelled and reported as failed.
        """
        logger.info(
            f"Starting batch. count={len(docs)} sink_mode={self.settings.batch_sink_mode}"
        )
        if self.settings.batch_sink_mode == "shared":
            results = self._run_batch_shared(docs, on_result)
        else:
            results = self._fan_out(docs, self._run, on_result)

        batch = BatchResult(results=results)
        logger.info(f"Batch complete. ok={batch.succeeded} failed={batch.failed}")
        return batch

    # single run

    def _run(self, doc: InputDocument, state: RunState) -> PipelineResult:
        title = derive_title(doc.display_name)
        try:
            result = self._prepare(doc, state)
            state.enter("sink")
            resource = commit(
                result,
                title,
                self.services.sheets,
                ragged_rows=self.settings.ragged_rows,
                on_created=state.created,
            )
        except Exception as e:
            state.phase = "failed"
            return self._failure(doc, e, getattr(e, "stage", state.stage))

        state.phase = "done"
        return PipelineSuccess(
            sheet_url=resource.url,
            message="Document processed, table extracted, and spreadsheet created successfully",
            spreadsheet_id=resource.spreadsheet_id,
            title=resource.title,
        )

    def _prepare(self, doc: InputDocument, state: RunState) -> ExtractionResult:
        state.enter("normalize")
        logger.info(f"Normalizing {doc.display_name or '<unnamed>'} ({doc.media_type})")
        image = normalize(doc, self.services.normalize_options)

        state.enter("extract")
        logger.info(f"Extracting from {image.media_type} {image.width}x{image.height}")
        return extract_table(image, self.services.llm)

    def _failure(self, doc: InputDocument, e: Exception, stage: Stage) -> PipelineFailure:
        if isinstance(e, PipelineError):
            logger.warning(f"Pipeline failed at {stage}: {type(e).__name__}: {e}")
        else:
            logger.exception(f"Unexpected error during {stage}")

        resource = getattr(e, "resource", None)
        sheet_url = resource.url if resource else None
        artifact = None
        if self.settings.persist_failures:
            try:
                artifact = persist_failure(
                    failure_dir=Path(self.settings.failure_dir),
                    data=doc.data,
                    display_name=doc.display_name,
                    media_type=doc.media_type,
                    stage=stage,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    sheet_url=sheet_url,
                    raw_output=getattr(e, "raw", None),
                    keep_raw=self.settings.keep_raw_llm_output,
                )
            except OSError:
                # the run's own result still goes back to the caller
                logger.exception(f"Could not write failure artifact under {self.settings.failure_dir}")
            else:
                logger.error(f"Wrote failure artifact: {artifact}")

        return PipelineFailure(
            stage=stage,
            error_type=type(e).__name__,
            reason=describe_failure(stage, e),
            client_error=getattr(e, "client_error", False),
            sheet_url=sheet_url,
            failure_artifact=str(artifact) if artifact else None,
        )

    # batch

    def _fan_out(
        self,
        docs: Sequence[InputDocument],
        fn: Callable[[InputDocument, RunState], object],
        on_result: Optional[ResultCallback],
    ) -> list:
        if not docs:
            return []

        outcomes: list = [None] * len(docs)
        states = [RunState() for _ in docs]
        workers = max(1, min(self.settings.batch_max_workers, len(docs)))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipeline")
        futures = {
            executor.submit(fn, doc, state): i for i, (doc, state) in enumerate(zip(docs, states))
        }

        def _report(i: int) -> None:
            if on_result and isinstance(outcomes[i], (PipelineSuccess, PipelineFailure)):
                on_result(i, outcomes[i])

        try:
            for fut in as_completed(futures, timeout=self.settings.batch_timeout_s):
                i = futures[fut]
                outcomes[i] = fut.result()
                _report(i)
        except FutureTimeout:
            pending = {fut: i for fut, i in futures.items() if outcomes[i] is None}
            writing = []
            for fut, i in pending.items():
                if fut.done():
                    continue
                fut.cancel()
                if states[i].stop() == "sink":
                    writing.append(fut)
            # a spreadsheet may already exist; give its writes the sink bound to land
            if writing:
                wait(writing, timeout=self.settings.sink_timeout_s)

            for fut, i in pending.items():
                if fut.done() and not fut.cancelled():
                    outcomes[i] = fut.result()
                else:
                    state = states[i]
                    err = BatchDeadlineExceeded(
                        state.stage, self.settings.batch_timeout_s, resource=state.resource
                    )
                    outcomes[i] = self._failure(docs[i], err, state.stage)
                _report(i)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return outcomes

    def _run_batch_shared(
        self,
        docs: Sequence[InputDocument],
        on_result: Optional[ResultCallback],
    ) -> List[PipelineResult]:
        def prepare_one(doc: InputDocument, state: RunState) -> Union[ExtractionResult, PipelineFailure]:
            try:
                return self._prepare(doc, state)
            except Exception as e:
                return self._failure(doc, e, getattr(e, "stage", state.stage))

        outcomes = self._fan_out(docs, prepare_one, on_result)
        extracted = [i for i, o in enumerate(outcomes) if isinstance(o, ExtractionResult)]
        results: List[PipelineResult] = list(outcomes)
        if not extracted:
            return results

        title = derive_title(docs[extracted[0]].display_name)
        try:
            resource = commit_many(
                [outcomes[i] for i in extracted],
                title,
                self.services.sheets,
                ragged_rows=self.settings.ragged_rows,
            )
        except Exception as e:
            for i in extracted:
                results[i] = self._failure(docs[i], e, "sink")
        else:
            for page, i in enumerate(extracted, 1):
                results[i] = PipelineSuccess(
                    sheet_url=resource.url,
                    message=f"Table extracted and written to tab 'Page {page}'",
                    spreadsheet_id=resource.spreadsheet_id,
                    title=resource.title,
                )

        if on_result:
            for i in extracted:
                on_result(i, results[i])
        return results
