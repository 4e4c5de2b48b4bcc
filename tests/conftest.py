import io

import pypdfium2 as pdfium
import pytest
from PIL import Image, ImageDraw

from doc2sheet.llm_client import MockLLMClient
from doc2sheet.normalize import NormalizeOptions
from doc2sheet.pipeline import Pipeline, Services
from doc2sheet.settings import get_settings
from doc2sheet.sheets_client import InMemorySheetsClient


@pytest.fixture(autouse=True)
def force_offline_services(monkeypatch, tmp_path):
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    monkeypatch.setenv("LLM_MODEL", "mock-1")
    monkeypatch.setenv("MOCK_CHAOS", "0")
    monkeypatch.setenv("SINK_PROVIDER", "memory")
    monkeypatch.setenv("FAILURE_DIR", str(tmp_path / "fail"))
    monkeypatch.setenv("BATCH_SINK_MODE", "per_item")
    monkeypatch.setenv("RAGGED_ROWS", "pad")


def _table_image(size=(160, 80)) -> Image.Image:
    img = Image.new("RGB", size, "white")
    draw = ImageDraw.Draw(img)
    draw.line([(0, size[1] // 2), (size[0], size[1] // 2)], fill="black")
    draw.line([(size[0] // 2, 0), (size[0] // 2, size[1])], fill="black")
    draw.text((5, 5), "a", fill="black")
    draw.text((5, size[1] // 2 + 5), "c", fill="black")
    return img


def _encode(img: Image.Image, fmt: str, **kw) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt, **kw)
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return _encode(_table_image(), "JPEG")


@pytest.fixture
def png_bytes() -> bytes:
    return _encode(_table_image(), "PNG")


@pytest.fixture
def pdf_bytes() -> bytes:
    # 160x80 pt single page
    return _encode(_table_image(), "PDF", resolution=72.0)


@pytest.fixture
def empty_pdf_bytes() -> bytes:
    doc = pdfium.PdfDocument.new()
    buf = io.BytesIO()
    doc.save(buf)
    doc.close()
    return buf.getvalue()


@pytest.fixture
def sheets() -> InMemorySheetsClient:
    return InMemorySheetsClient()


@pytest.fixture
def make_pipeline(sheets):
    def _make(llm=None, sheets_client=None) -> Pipeline:
        s = get_settings()
        return Pipeline(
            Services(
                llm=llm or MockLLMClient(),
                sheets=sheets_client or sheets,
                normalize_options=NormalizeOptions.from_settings(s),
                settings=s,
            )
        )

    return _make
