import json
import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def persist_failure(
    *,
    failure_dir: Path,
    data: bytes,
    display_name: Optional[str],
    media_type: str,
    stage: str,
    error_type: str,
    error_message: str,
    sheet_url: Optional[str] = None,
    raw_output: Optional[str] = None,
    keep_raw: bool = False,
) -> Path:
    """
    Writes a structured failure artifact for debugging.
    - Keyed on the input bytes, so the same upload maps to the same key
    - Never stores the document itself; raw extraction output only on request
    """
    key = _sha256_hex(data)[:16]
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    failure_dir.mkdir(parents=True, exist_ok=True)
    path = failure_dir / f"extraction_failure_{key}_{ts}.json"

    raw = raw_output or ""
    payload = {
        "key": key,
        "timestamp_utc": ts,
        "display_name": display_name,
        "media_type": media_type,
        "size_bytes": len(data),
        "stage": stage,
        "error_type": error_type,
        "error_message": error_message,
        "sheet_url": sheet_url,
        "raw_output_sha256": _sha256_hex(raw.encode("utf-8")) if raw else None,
        "raw_output_preview": raw[:200] if keep_raw else "",  # cap
    }

    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
