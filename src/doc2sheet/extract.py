import base64
import json
import logging
from typing import Optional

from pydantic import ValidationError

from doc2sheet.errors import SchemaViolation
from doc2sheet.llm_client import LLMClient, MockLLMClient, OpenAILLMClient
from doc2sheet.schema import CanonicalImage, ExtractionResult
from doc2sheet.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def to_data_uri(image: CanonicalImage) -> str:
    encoded = base64.b64encode(image.data).decode("ascii")
    return f"data:{image.media_type};base64,{encoded}"


def extract_table(image: CanonicalImage, client: Optional[LLMClient] = None) -> ExtractionResult:
    client = client or get_llm_client()
    raw = client.extract_table(to_data_uri(image))

    # The service is asked for schema-constrained output, but its answer is
    # still validated here before anything downstream sees it.
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SchemaViolation(f"Extraction output was not valid JSON: {e}", raw=raw) from e

    try:
        result = ExtractionResult.model_validate(payload)
    except ValidationError as e:
        raise SchemaViolation(
            f"Extraction output failed schema validation: {e.error_count()} error(s)", raw=raw
        ) from e

    logger.info(
        f"Extracted {len(result.grid)} row(s) via {client.provider}/{client.model}"
    )
    return result


def get_llm_client(settings: Optional[Settings] = None) -> LLMClient:
    s = settings or get_settings()
    if s.llm_provider == "mock":
        seed_raw = s.mock_chaos_seed.strip()
        return MockLLMClient(
            model=s.llm_model,
            chaos_enabled=s.mock_chaos,
            chaos_rate=s.mock_chaos_rate,
            chaos_seed=int(seed_raw) if seed_raw.isdigit() else None,
        )
    if s.llm_provider == "openai":
        return OpenAILLMClient(
            s.llm_model,
            api_key=s.openai_api_key,
            timeout_s=s.extraction_timeout_s,
        )
    raise ValueError(f"Unsupported LLM_PROVIDER: {s.llm_provider}")
