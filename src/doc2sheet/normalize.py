"""
Raster normalization: turn an uploaded PDF or image into the single
canonical image handed to extraction.

- Images are checked against their actual signature and passed through as-is.
- PDFs are opened in memory, page 1 is rendered at a fixed scale and
  re-encoded as JPEG.
"""
from __future__ import annotations

import io
import logging
import mimetypes
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import ExitStack

import pypdfium2 as pdfium
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from doc2sheet.errors import DecodeError, RasterizationError, UnsupportedFormat
from doc2sheet.schema import PDF_MEDIA_TYPE, CanonicalImage, InputDocument
from doc2sheet.settings import Settings

logger = logging.getLogger(__name__)

# Pillow format name -> media type accepted by the extraction service
IMAGE_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}
SUPPORTED_IMAGE_TYPES = frozenset(IMAGE_FORMATS.values())

MEDIA_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}

# pdfium is not thread-safe; all document access goes through this lock.
_PDFIUM_LOCK = threading.Lock()


class NormalizeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    render_scale: float = Field(2.0, ge=1.0)
    jpeg_quality: int = Field(90, ge=1, le=95)
    render_timeout_s: float = Field(30.0, gt=0)
    render_wait_timeout_s: float = Field(120.0, gt=0)

    @classmethod
    def from_settings(cls, s: Settings) -> "NormalizeOptions":
        return cls(
            render_scale=s.render_scale,
            jpeg_quality=s.jpeg_quality,
            render_timeout_s=s.render_timeout_s,
            render_wait_timeout_s=s.render_wait_timeout_s,
        )


def canonical_media_type(media_type: str | None) -> str:
    base = (media_type or "").split(";", 1)[0].strip().lower()
    return MEDIA_TYPE_ALIASES.get(base, base)


def guess_media_type(filename: str | None, declared: str | None = None) -> str:
    """Declared upload type, or a guess from the file name when it is missing or generic."""
    media_type = canonical_media_type(declared)
    if media_type and media_type != "application/octet-stream":
        return media_type
    guessed, _ = mimetypes.guess_type(filename or "")
    return canonical_media_type(guessed) or "application/octet-stream"


def normalize(doc: InputDocument, options: NormalizeOptions | None = None) -> CanonicalImage:
    options = options or NormalizeOptions()
    media_type = canonical_media_type(doc.media_type)

    if media_type == PDF_MEDIA_TYPE:
        return _rasterize_pdf(doc.data, options)

    if media_type.startswith("image/"):
        if media_type not in SUPPORTED_IMAGE_TYPES:
            raise UnsupportedFormat(f"Unsupported image type: {media_type}")
        return _check_image(doc.data, media_type)

    raise UnsupportedFormat(
        f"Unsupported file type: {doc.media_type or 'unknown'} (expected a PDF or an image)"
    )


def _check_image(data: bytes, declared: str) -> CanonicalImage:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise DecodeError(f"File is not a readable {declared} image: {e}") from e

    actual = IMAGE_FORMATS.get(fmt or "")
    if actual != declared:
        raise DecodeError(
            f"Declared type {declared} does not match file content ({fmt or 'unknown'})"
        )

    return CanonicalImage(
        data=data,
        media_type=actual,
        width=width,
        height=height,
        source_media_type=declared,
    )


def _rasterize_pdf(data: bytes, options: NormalizeOptions) -> CanonicalImage:
    # The lock is taken here so queueing behind another render does not eat
    # into this render's timeout. The worker releases it, so a timed-out
    # render holds it only until pdfium returns.
    if not _PDFIUM_LOCK.acquire(timeout=options.render_wait_timeout_s):
        raise RasterizationError(
            f"PDF renderer stayed busy for {options.render_wait_timeout_s:g}s"
        )

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pdf-render")
    try:
        future = executor.submit(
            _render_locked, data, options.render_scale, options.jpeg_quality
        )
    except BaseException:
        _PDFIUM_LOCK.release()
        executor.shutdown(wait=False)
        raise

    try:
        return future.result(timeout=options.render_timeout_s)
    except FutureTimeout as e:
        raise RasterizationError(
            f"Rendering page 1 did not finish within {options.render_timeout_s:g}s"
        ) from e
    finally:
        executor.shutdown(wait=False)


def _render_locked(data: bytes, scale: float, quality: int) -> CanonicalImage:
    try:
        return _render_first_page(data, scale, quality)
    finally:
        _PDFIUM_LOCK.release()


def _render_first_page(data: bytes, scale: float, quality: int) -> CanonicalImage:
    # caller holds _PDFIUM_LOCK; the worker owns every handle opened here
    with ExitStack() as stack:
        try:
            pdf = pdfium.PdfDocument(data)
        except pdfium.PdfiumError as e:
            raise DecodeError(f"Could not open PDF: {e}") from e
        stack.callback(pdf.close)

        page_count = len(pdf)
        if page_count == 0:
            raise DecodeError("PDF has no pages")
        if page_count > 1:
            logger.info(f"PDF has {page_count} pages; only page 1 is extracted.")

        try:
            page = pdf[0]
            stack.callback(page.close)
            bitmap = page.render(scale=scale)
            stack.callback(bitmap.close)
            image = bitmap.to_pil().convert("RGB")
        except (pdfium.PdfiumError, OSError, ValueError) as e:
            raise RasterizationError(f"Could not render page 1: {e}") from e

        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=quality)
        width, height = image.size
        image.close()

    logger.info(f"Rendered PDF page 1 at scale={scale:g} -> {width}x{height} JPEG")
    return CanonicalImage(
        data=buf.getvalue(),
        media_type="image/jpeg",
        width=width,
        height=height,
        source_media_type=PDF_MEDIA_TYPE,
    )
