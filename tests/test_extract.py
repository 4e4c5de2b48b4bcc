import base64
import json

import pytest

from doc2sheet.errors import SchemaViolation, UpstreamError
from doc2sheet.extract import extract_table, get_llm_client, to_data_uri
from doc2sheet.llm_client import MockLLMClient, OpenAILLMClient
from doc2sheet.schema import CanonicalImage
from doc2sheet.settings import get_settings


class StaticClient:
    provider = "static"
    model = "static-1"

    def __init__(self, raw: str):
        self.raw = raw
        self.seen = []

    def extract_table(self, data_uri: str) -> str:
        self.seen.append(data_uri)
        return self.raw


class FailingClient(StaticClient):
    def extract_table(self, data_uri: str) -> str:
        raise UpstreamError("HTTP 401: bad key", status_code=401)


@pytest.fixture
def image(jpeg_bytes) -> CanonicalImage:
    return CanonicalImage(
        data=jpeg_bytes, media_type="image/jpeg", width=160, height=80, source_media_type="image/jpeg"
    )


def test_data_uri_round_trips_bytes(image):
    uri = to_data_uri(image)
    header, payload = uri.split(",", 1)
    assert header == "data:image/jpeg;base64"
    assert base64.b64decode(payload) == image.data


def test_valid_payload_is_accepted(image):
    client = StaticClient(json.dumps({"grid": [["a", "b"], ["c", "d"]], "description": "two rows"}))
    result = extract_table(image, client)
    assert result.grid == [["a", "b"], ["c", "d"]]
    assert result.description == "two rows"
    assert client.seen[0].startswith("data:image/jpeg;base64,")


@pytest.mark.parametrize(
    "raw",
    [
        "Sure! Here is the table: a, b, c.",
        '```json\n{"grid": [["a"]], "description": ""}\n```',
        "",
        json.dumps({"grid": [["a"]]}),
        json.dumps({"description": "missing grid"}),
        json.dumps({"grid": [[1, 2]], "description": ""}),
        json.dumps([["a", "b"]]),
    ],
)
def test_anything_off_schema_is_schema_violation(image, raw):
    with pytest.raises(SchemaViolation) as exc:
        extract_table(image, StaticClient(raw))
    assert exc.value.raw == raw


def test_upstream_error_propagates(image):
    with pytest.raises(UpstreamError) as exc:
        extract_table(image, FailingClient(""))
    assert exc.value.status_code == 401


def test_mock_is_deterministic(image):
    r1 = extract_table(image, MockLLMClient()).model_dump()
    r2 = extract_table(image, MockLLMClient()).model_dump()
    assert r1 == r2
    assert len(r1["grid"]) == 2


def test_mock_chaos_returns_prose(image):
    client = MockLLMClient(chaos_enabled=True, chaos_rate=1.0, chaos_seed=7)
    with pytest.raises(SchemaViolation):
        extract_table(image, client)


def test_provider_selection(monkeypatch):
    assert isinstance(get_llm_client(), MockLLMClient)

    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert isinstance(get_llm_client(get_settings()), OpenAILLMClient)

    monkeypatch.setenv("LLM_PROVIDER", "nope")
    with pytest.raises(ValueError):
        get_llm_client()
