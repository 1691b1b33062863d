import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

UNSERIALIZABLE = {"message": "metadata_unserializable"}

_LEVELS = {"info": "INFO", "warn": "WARNING", "warning": "WARNING", "error": "ERROR", "debug": "DEBUG"}

def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), enqueue=True, backtrace=False, diagnose=False)

def safe_meta(meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """JSON round-trip of the metadata; a placeholder if it can't be serialized."""
    try:
        return json.loads(json.dumps(meta or {}))
    except (TypeError, ValueError):
        return dict(UNSERIALIZABLE)

def log_event(level: str, event: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {
        "level": level,
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    cleaned = safe_meta(meta)
    if isinstance(cleaned, dict):
        payload.update(cleaned)
    else:
        payload["meta"] = cleaned
    logger.log(_LEVELS.get(level, "INFO"), json.dumps(payload))
    return payload

def log_info(event: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return log_event("info", event, meta)

def log_warn(event: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return log_event("warn", event, meta)

def log_error(event: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return log_event("error", event, meta)
