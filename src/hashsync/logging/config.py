"""Stdout logging setup for the hashsync CLI and workers."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from . import fields
from .context import bind_context, clear_context, current_context

# Chatty libraries only log warnings unless hashsync itself runs at DEBUG.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "celery.worker.strategy")


class ContextFilter(logging.Filter):
    """Copy the bound correlation fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.hashsync_context = current_context()
        return True


def _context_of(record: logging.LogRecord) -> dict[str, str]:
    return getattr(record, "hashsync_context", None) or {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: core fields, then correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            fields.TIMESTAMP: datetime.fromtimestamp(record.created, UTC).isoformat(),
            fields.LEVEL: record.levelname,
            fields.LOGGER: record.name,
            fields.MESSAGE: record.getMessage(),
            **_context_of(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


class PlainFormatter(logging.Formatter):
    """Readable lines with correlation fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = _context_of(record)
        if not context:
            return message
        return message + " " + " ".join(f"{key}={context[key]}" for key in sorted(context))


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = True,
    service: str | None = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Calling it again replaces the handler and the bound service name.
    """
    level = level.upper()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if json_output else PlainFormatter())
    root.addHandler(handler)

    quiet_level = logging.DEBUG if level == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    clear_context()
    if service:
        bind_context(**{fields.SERVICE: service})
