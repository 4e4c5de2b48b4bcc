from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from doc2sheet.normalize import guess_media_type
from doc2sheet.pipeline import Pipeline, build_services
from doc2sheet.results import PipelineResult
from doc2sheet.schema import InputDocument

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # service handles are built once and shared by every request
    app.state.pipeline = Pipeline(build_services())
    yield


app = FastAPI(
    title="doc2sheet",
    version="0.1.0",
    description="Upload a PDF or image of a table; get back a new spreadsheet with its contents.",
    lifespan=lifespan,
)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


async def _read_upload(upload: UploadFile, max_bytes: int) -> Union[InputDocument, JSONResponse]:
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        return _error(400, f"File too large (max {max_bytes} bytes).")
    if not raw:
        return _error(400, f"Uploaded file {upload.filename!r} is empty.")
    return InputDocument(
        data=raw,
        media_type=guess_media_type(upload.filename, upload.content_type),
        display_name=upload.filename,
    )


async def _run(pipeline: Pipeline, doc: InputDocument) -> PipelineResult:
    cancel = threading.Event()
    try:
        return await run_in_threadpool(pipeline.run, doc, cancel=cancel)
    except asyncio.CancelledError:
        # client went away: stop at the next stage boundary
        cancel.set()
        raise


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/api/upload")
async def api_upload(
    file: Optional[UploadFile] = File(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> JSONResponse:
    if file is None or not file.filename:
        return _error(400, "No file uploaded (expected multipart field 'file').")

    doc = await _read_upload(file, pipeline.settings.max_upload_bytes)
    if isinstance(doc, JSONResponse):
        return doc

    result = await _run(pipeline, doc)
    if result.status == "ok":
        return JSONResponse(content={"message": result.message, "sheetUrl": result.sheet_url})

    logger.error(f"Upload {doc.display_name!r} failed at {result.stage}: {result.error_type}")
    extra = {"sheetUrl": result.sheet_url} if result.sheet_url else {}
    return _error(400 if result.client_error else 500, result.reason, **extra)


@app.post("/api/upload/batch")
async def api_upload_batch(
    files: Optional[List[UploadFile]] = File(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> JSONResponse:
    uploads = [f for f in (files or []) if f.filename]
    if not uploads:
        return _error(400, "No files uploaded (expected multipart field 'files').")

    docs: List[InputDocument] = []
    for upload in uploads:
        doc = await _read_upload(upload, pipeline.settings.max_upload_bytes)
        if isinstance(doc, JSONResponse):
            return doc
        docs.append(doc)

    def _progress(index: int, result: PipelineResult) -> None:
        logger.info(f"Batch item {index + 1}/{len(docs)} finished: {result.status}")

    batch = await run_in_threadpool(pipeline.run_batch, docs, on_result=_progress)

    content = {
        "message": f"{batch.succeeded} of {len(docs)} document(s) processed successfully",
        "succeeded": batch.succeeded,
        "failed": batch.failed,
        "sheetUrl": batch.first_sheet_url,
        "sheetUrls": batch.sheet_urls,
        "results": [r.model_dump(exclude={"failure_artifact"}) for r in batch.results],
    }
    if batch.succeeded:
        return JSONResponse(content=content)
    all_client = all(r.client_error for r in batch.results)
    return JSONResponse(status_code=400 if all_client else 500, content={"error": content["message"], **content})
