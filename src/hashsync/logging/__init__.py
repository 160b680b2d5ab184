"""Structured stdout logging for hashsync workers and CLI."""

from .config import configure_logging
from .context import bind_context, clear_context, log_context

__all__ = ["bind_context", "clear_context", "configure_logging", "log_context"]
