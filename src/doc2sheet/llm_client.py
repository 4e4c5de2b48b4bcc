import hashlib
import json
import random
from typing import Optional, Protocol

import openai
from openai import OpenAI

from doc2sheet.errors import ExtractionTimeout, SchemaViolation, UpstreamError
from doc2sheet.schema import EXTRACTION_JSON_SCHEMA

EXTRACTION_PROMPT = (
    "Transcribe all tabular content from this image. "
    "Return `grid` as a 2D array where each inner array is one row of the table, "
    "top to bottom, with cells left to right exactly as printed. "
    "Keep every cell as a string, including numbers and dates. "
    "Use an empty string for empty cells. "
    "Return `description` as one or two sentences describing what the table contains."
)

SYSTEM_PROMPT = "You convert images of tables into structured data. Do not invent values."


class LLMClient(Protocol):
    provider: str
    model: str

    def extract_table(self, data_uri: str) -> str:
        """Send one image (as a data URI) and return the raw response text."""
        ...


class MockLLMClient:
    """Deterministic offline stand-in for the extraction service.

    With chaos enabled it answers in prose (not JSON) at ``chaos_rate``.
    """

    provider = "mock"

    def __init__(
        self,
        model: str = "mock-1",
        *,
        chaos_enabled: bool = False,
        chaos_rate: float = 0.0,
        chaos_seed: Optional[int] = None,
    ):
        self.model = model
        self.chaos_enabled = chaos_enabled
        self.chaos_rate = chaos_rate
        self._rng = random.Random(chaos_seed)

    def extract_table(self, data_uri: str) -> str:
        if self.chaos_enabled and self._rng.random() < self.chaos_rate:
            return "Sure! The image shows a table with a few rows of data about the item."

        header, _, payload = data_uri.partition(",")
        media_type = header.removeprefix("data:").split(";", 1)[0]
        digest = hashlib.sha256(payload.encode("ascii")).hexdigest()[:12]
        return json.dumps(
            {
                "grid": [["Source", "Fingerprint"], [media_type, digest]],
                "description": f"Mock extraction of a {media_type} image.",
            }
        )


class OpenAILLMClient:
    provider = "openai"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 60.0,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.timeout_s = timeout_s
        # retries belong to the caller, not the SDK
        self._client = client or OpenAI(api_key=api_key, timeout=timeout_s, max_retries=0)

    def extract_table(self, data_uri: str) -> str:
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                timeout=self.timeout_s,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": data_uri, "detail": "high"}},
                        ],
                    },
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "table_extraction",
                        "strict": True,
                        "schema": EXTRACTION_JSON_SCHEMA,
                    },
                },
            )
        except openai.APITimeoutError as e:
            raise ExtractionTimeout(
                f"Extraction service did not answer within {self.timeout_s:g}s"
            ) from e
        except openai.APIStatusError as e:
            raise UpstreamError(
                f"Extraction service returned HTTP {e.status_code}: {e.message}",
                status_code=e.status_code,
            ) from e
        except openai.APIConnectionError as e:
            raise UpstreamError(f"Could not reach extraction service: {e}") from e
        except openai.OpenAIError as e:
            raise UpstreamError(f"Extraction service call failed: {type(e).__name__}: {e}") from e

        message = resp.choices[0].message
        refusal = getattr(message, "refusal", None)
        if refusal:
            raise SchemaViolation(f"Extraction service refused the request: {refusal}", raw=refusal)
        return message.content or ""
