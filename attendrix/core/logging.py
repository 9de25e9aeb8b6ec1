"""
Structured logging for the attendance sync pipeline.

Two pieces of context ride along with every record on the "attendrix" logger:

- request_id: set per HTTP request by RequestIdMiddleware.
- action context: the user and class an attendance action is working on, bound
  by the orchestrator for the duration of one action.

Production emits one JSON object per line; development emits a compact line
with the same context.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
action_ctx_var: ContextVar[Tuple[Optional[str], Optional[str]]] = ContextVar("action", default=(None, None))

_STRUCTURED_FIELDS = ("user_id", "class_id", "event_type", "error_code")
_LATENCY_BOUNDS_MS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_action_context(user_id: str, class_id: Optional[str] = None) -> Iterator[None]:
    """Tag every record logged inside the block with ``user_id``/``class_id``."""
    token = action_ctx_var.set((user_id, class_id))
    try:
        yield
    finally:
        action_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BOUNDS_MS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


class ContextFilter(logging.Filter):
    """Fill request and action context on records that did not set it explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        user_id, class_id = action_ctx_var.get()
        if getattr(record, "user_id", None) is None and user_id is not None:
            record.user_id = user_id
        if getattr(record, "class_id", None) is None and class_id is not None:
            record.class_id = class_id
        return True


def _context(record: logging.LogRecord) -> Dict[str, object]:
    context: Dict[str, object] = {}
    for name in ("request_id",) + _STRUCTURED_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = value
    return context


class StructuredFormatter(logging.Formatter):
    """JSON lines when ``as_json``; otherwise ``ts LEVEL message k=v ...``."""

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")
        context = _context(record)
        if self.as_json:
            payload = {
                "timestamp": timestamp,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                **context,
            }
            if record.exc_info:
                payload["exc_info"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)
        tail = " ".join(f"{key}={value}" for key, value in context.items())
        line = f"{timestamp} {record.levelname} {record.getMessage()}"
        if tail:
            line = f"{line} {tail}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    logger = logging.getLogger("attendrix")
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(as_json=env.lower() == "production"))
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Keep uvicorn's own access lines out of the structured stream
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    class_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log ``msg`` with pipeline context; values in ``extra`` are truncated."""
    logger = logging.getLogger("attendrix")
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    bound_user, bound_class = action_ctx_var.get()
    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id or bound_user,
        "class_id": class_id or bound_class,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
