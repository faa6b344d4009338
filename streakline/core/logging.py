"""
Structured logging for the API process and the batch worker.

- request_id is bound per HTTP request by the request-id middleware.
- bind_log_context() binds extra fields (job name, target day) for a block of
  work; every record logged inside the block carries them.
- JSON output in production, one-line console output elsewhere.
"""

import bisect
import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_log_context: ContextVar[Dict[str, object]] = ContextVar("log_context", default={})

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_LATENCY_BOUNDS_MS = (10, 100, 500, 1000)
_LATENCY_LABELS = ("<10ms", "10-100ms", "100-500ms", "500-1000ms", ">=1000ms")

MAX_FIELD_LENGTH = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


@contextmanager
def bind_log_context(**fields) -> Iterator[None]:
    """Attach fields to every record logged inside the block (nests)."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label for access logs."""
    if latency_ms is None:
        return "unknown"
    return _LATENCY_LABELS[bisect.bisect_right(_LATENCY_BOUNDS_MS, latency_ms)]


class ContextFilter(logging.Filter):
    """Copy request_id and bound context fields onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _record_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS and k != "request_id"}


def _utc_iso(created: float) -> str:
    return datetime.fromtimestamp(created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "timestamp": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_iso(record.created)[11:23], f"{record.levelname:<7}", record.name]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"rid={rid}")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in _record_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO", fmt: str = "auto") -> None:
    """Install one stdout handler on the "streakline" logger.

    fmt is "json", "console" or "auto" (json in production only).
    """
    if fmt == "auto":
        fmt = "json" if env.lower() == "production" else "console"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt == "json" else ConsoleFormatter())
    handler.addFilter(ContextFilter())

    logger = logging.getLogger("streakline")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own handlers; don't double-print through root
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _clip(value) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= MAX_FIELD_LENGTH else text[:MAX_FIELD_LENGTH] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Domain event log line with request correlation and clipped extras."""
    logger = logging.getLogger("streakline")
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {"request_id": get_request_id(), "user_id": user_id}
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
