"""Correlation fields attached to every log line.

Propagation runs, delivery attempts and drift passes bind their identifiers
here. Each thread and Celery task has its own copy of the mapping.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Mapping

_FIELDS: ContextVar[dict[str, str]] = ContextVar("hashsync_log_fields", default={})


def current_context() -> dict[str, str]:
    return dict(_FIELDS.get())


def bind_context(**values: object) -> None:
    """Add fields for the rest of the current context; ``None`` values are skipped."""
    merged = dict(_FIELDS.get())
    merged.update({key: str(value) for key, value in values.items() if value is not None})
    _FIELDS.set(merged)


def clear_context() -> None:
    _FIELDS.set({})


@contextmanager
def log_context(values: Mapping[str, object]) -> Iterator[None]:
    """Bind fields for one block, restoring the previous fields afterwards."""
    token = _FIELDS.set(dict(_FIELDS.get()))
    try:
        bind_context(**dict(values))
        yield
    finally:
        _FIELDS.reset(token)
