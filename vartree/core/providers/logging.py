"""Shared logging helpers for statistics providers."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

logger = logging.getLogger(__name__)

_SECRET_KEY_MARKERS = ("password", "token", "secret", "api_key")
_MAX_BINDING_CHARS = 200


def get_logs_dir() -> Path:
    """Get logs directory, create if needed."""
    logs_dir = Path("./logs")
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def _sanitize_binding(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_BINDING_CHARS:
        return value[:_MAX_BINDING_CHARS] + "...[truncated]"
    if isinstance(value, (bytes, bytearray)):
        return f"[BINARY length={len(value)}]"
    return value


def _sanitize_meta(meta: dict[str, Any]) -> dict[str, Any]:
    clean = {}
    for key, value in meta.items():
        if any(marker in key.lower() for marker in _SECRET_KEY_MARKERS):
            clean[key] = "[REDACTED_SECRET]"
        else:
            clean[key] = value
    return clean


def log_query(
    operation: str,
    sql: str,
    bindings: Sequence[Any],
    provider: str = "",
    row_count: int | None = None,
    elapsed_seconds: float | None = None,
    meta: dict[str, Any] | None = None,
) -> Path | None:
    """Write a sanitized debug record of one statistics query to a JSON file.

    Returns the path written, or None if the write failed.
    """
    logs_dir = get_logs_dir()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    prefix = f"{provider}_" if provider else ""
    log_file = logs_dir / f"{timestamp}_{prefix}{operation}.json"

    log_data = {
        "timestamp": datetime.now().isoformat(),
        "operation": operation,
        "provider": provider,
        "sql": sql,
        "bindings": [_sanitize_binding(b) for b in bindings],
        "row_count": row_count,
        "elapsed_seconds": round(elapsed_seconds, 4) if elapsed_seconds is not None else None,
        "meta": _sanitize_meta(meta or {}),
    }

    try:
        with open(log_file, "w", encoding="utf-8") as f:
            json.dump(log_data, f, indent=2, default=str)
    except OSError as exc:
        logger.warning("Failed to write query debug log %s: %s", log_file, exc)
        return None
    return log_file
