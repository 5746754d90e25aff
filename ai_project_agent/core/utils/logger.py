"""Logger configuration utilities with correlation ID support."""
from __future__ import annotations

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

_CORRELATION_ID = contextvars.ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    """Inject the active correlation ID into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - delegation
        record.correlation_id = _CORRELATION_ID.get()
        return True


class StructuredFormatter(logging.Formatter):
    """Emit structured JSON log records."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
            "thread": record.threadName,
        }
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update(extra_fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def configure_logging(level: str = "INFO", *, structured: bool = False) -> None:
    """Configure root logging for the orchestrator and its CLI."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(name)s | %(levelname)s | %(threadName)s | cid=%(correlation_id)s | %(message)s"
        )
        handler.setFormatter(formatter)
    root.addHandler(handler)


def set_correlation_id(value: Optional[str]) -> None:
    """Set the active correlation ID for subsequent log records."""
    _CORRELATION_ID.set(value or "-")


def get_correlation_id() -> str:
    """Return the active correlation ID for the current context."""
    return _CORRELATION_ID.get()


@contextmanager
def correlation_scope(value: str) -> Iterator[None]:
    """Bind ``value`` as the correlation ID for the duration of the block."""
    token = _CORRELATION_ID.set(value)
    try:
        yield
    finally:
        _CORRELATION_ID.reset(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Retrieve a module-level logger."""
    return logging.getLogger(name if name else "ai_project_agent")


__all__ = [
    "configure_logging",
    "correlation_scope",
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
]
