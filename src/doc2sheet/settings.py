from pydantic import BaseModel, ConfigDict, Field
from dotenv import load_dotenv
from typing import Literal
import os

load_dotenv()


def _env(name: str, default: str | None = None):
    return Field(default_factory=lambda: os.getenv(name, default))


def _env_float(name: str, default: float):
    return Field(default_factory=lambda: float(os.getenv(name, str(default))))


def _env_int(name: str, default: int):
    return Field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_flag(name: str, default: str = "0"):
    return Field(default_factory=lambda: os.getenv(name, default) == "1")


class Settings(BaseModel):
    model_config = ConfigDict(validate_default=True)

    # extraction
    llm_provider: str = _env("LLM_PROVIDER", "mock")
    llm_model: str = _env("LLM_MODEL", "gpt-4o")
    openai_api_key: str | None = _env("OPENAI_API_KEY")
    extraction_timeout_s: float = _env_float("EXTRACTION_TIMEOUT_S", 60.0)
    mock_chaos: bool = _env_flag("MOCK_CHAOS")
    mock_chaos_rate: float = _env_float("MOCK_CHAOS_RATE", 0.0)
    mock_chaos_seed: str = _env("MOCK_CHAOS_SEED", "")

    # sink
    sink_provider: str = _env("SINK_PROVIDER", "memory")
    google_service_account_file: str | None = _env("GOOGLE_SERVICE_ACCOUNT_FILE")
    google_client_id: str | None = _env("GOOGLE_CLIENT_ID")
    google_client_secret: str | None = _env("GOOGLE_CLIENT_SECRET")
    google_refresh_token: str | None = _env("GOOGLE_REFRESH_TOKEN")
    google_project_id: str | None = _env("GOOGLE_PROJECT_ID")
    sink_timeout_s: float = _env_float("SINK_TIMEOUT_S", 30.0)
    ragged_rows: Literal["pad", "as_is"] = _env("RAGGED_ROWS", "pad")

    # normalization
    render_scale: float = Field(
        default_factory=lambda: float(os.getenv("RENDER_SCALE", "2.0")), ge=1.0
    )
    jpeg_quality: int = Field(
        default_factory=lambda: int(os.getenv("JPEG_QUALITY", "90")), ge=1, le=95
    )
    render_timeout_s: float = _env_float("RENDER_TIMEOUT_S", 30.0)
    render_wait_timeout_s: float = _env_float("RENDER_WAIT_TIMEOUT_S", 120.0)
    max_upload_bytes: int = _env_int("MAX_UPLOAD_BYTES", 20_000_000)

    # batch
    batch_sink_mode: Literal["per_item", "shared"] = _env("BATCH_SINK_MODE", "per_item")
    batch_max_workers: int = _env_int("BATCH_MAX_WORKERS", 4)
    batch_timeout_s: float = _env_float("BATCH_TIMEOUT_S", 300.0)

    # failure artifacts
    persist_failures: bool = _env_flag("PERSIST_FAILURES", "1")
    failure_dir: str = _env("FAILURE_DIR", "out/fail")
    keep_raw_llm_output: bool = _env_flag("KEEP_RAW_LLM_OUTPUT")


def get_settings() -> Settings:
    # re-read env each time (good for tests)
    return Settings()
