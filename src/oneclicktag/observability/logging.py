"""Logging configuration for OneClickTag.

Context fields (tenant_id, user_id, tracking_id) are carried in contextvars
so that every line logged during a provisioning call can be attributed.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

_tenant_id: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
_tracking_id: ContextVar[Optional[str]] = ContextVar("tracking_id", default=None)

_CONTEXT_FIELDS = (
    ("tenant_id", _tenant_id),
    ("user_id", _user_id),
    ("tracking_id", _tracking_id),
)


def current_log_context() -> Dict[str, str]:
    """Return the context fields that are set in the current task."""
    return {name: var.get() for name, var in _CONTEXT_FIELDS if var.get()}


@contextmanager
def log_context(
    tenant_id: Optional[object] = None,
    user_id: Optional[str] = None,
    tracking_id: Optional[object] = None,
) -> Iterator[None]:
    """Bind context fields for the duration of the block."""
    tokens = []
    for var, value in ((_tenant_id, tenant_id), (_user_id, user_id), (_tracking_id, tracking_id)):
        if value is not None:
            tokens.append((var, var.set(str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class StructuredFormatter(logging.Formatter):
    """JSON log formatter with context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(current_log_context())

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """Single-line formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        msg = (
            f"[{self.formatTime(record, self.datefmt)}] "
            f"{record.levelname:8s} {record.name}: {record.getMessage()}"
        )
        context = current_log_context()
        if context:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(environment: str = "development", log_level: str = "INFO"):
    """Install the root handler.

    Args:
        environment: "production" for JSON output, anything else for human-readable.
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    # Quiet noisy third-party loggers
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
