from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from consent_broker.core.correlation import get_correlation_id

# Extras copied verbatim from `logger.info(..., extra={...})` into the JSON line
_EXTRA_KEYS = (
    "method", "path", "status_code", "duration_ms",
    "consent_id", "consent_type", "status", "bank", "endpoint",
    "interaction_id", "grant_type", "context", "upstream",
)

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        cid = get_correlation_id()
        if cid:
            payload["correlation_id"] = cid
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    # Clear default handlers (including uvicorn's) and install ours
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)

def summarize_payload(payload: Any, depth: int = 0) -> Any:
    """Shrink upstream bodies before they hit the logs."""
    if payload is None:
        return None
    if isinstance(payload, str):
        if len(payload) > 140:
            return f"{payload[:120]}... ({len(payload)} chars)"
        return payload
    if not isinstance(payload, (dict, list, tuple)):
        return payload
    if depth > 2:
        return f"[array len={len(payload)}]" if isinstance(payload, (list, tuple)) else "[object]"
    if isinstance(payload, (list, tuple)):
        return [summarize_payload(item, depth + 1) for item in list(payload)[:5]]
    return {key: summarize_payload(value, depth + 1) for key, value in payload.items()}

def preview(secret: str | None, keep: int = 6) -> str | None:
    if not secret:
        return None
    return f"{secret[:keep]}..."
