"""Delivery record state transitions.

``pending -> dispatched -> published | deferred``, ``deferred -> dispatched``
on retry and ``deferred -> failed`` once attempts run out. ``published`` and
``failed`` are terminal until a new hash (or an explicit reset) starts a fresh
pending cycle on the same record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from hashsync.delivery.backoff import BackoffTable
from hashsync.errors import ExhaustedRetryError
from hashsync.models import DeliveryRecord
from hashsync.time_utils import ensure_optional_aware

PENDING = "pending"
DISPATCHED = "dispatched"
PUBLISHED = "published"
DEFERRED = "deferred"
FAILED = "failed"

DISPATCHABLE = (PENDING, DEFERRED)
IN_FLIGHT = (PENDING, DISPATCHED)


class InvalidTransition(ValueError):
    """Raised when a transition is not allowed from the record's current state."""


def mark_pending(
    record: DeliveryRecord,
    delivered_hash: str,
    *,
    now: datetime,
    details: dict[str, Any] | None = None,
) -> None:
    """Start a fresh delivery cycle for a new hash value."""
    record.delivered_hash = delivered_hash
    record.status = PENDING
    record.attempts = 0
    record.last_error = None
    record.next_try_at = None
    record.details = details
    record.updated_at = now


def mark_dispatched(record: DeliveryRecord, *, now: datetime) -> None:
    """Flag a due record as in flight right before its callback runs."""
    if not is_due(record, now):
        raise InvalidTransition(f"delivery {record.id} is not due (status={record.status})")
    record.status = DISPATCHED
    record.updated_at = now


def mark_published(record: DeliveryRecord, *, now: datetime) -> None:
    record.status = PUBLISHED
    record.published_at = now
    record.last_error = None
    record.next_try_at = None
    record.updated_at = now


def record_failure(
    record: DeliveryRecord,
    error: str,
    table: BackoffTable,
    *,
    now: datetime,
    max_attempts: int | None = None,
) -> ExhaustedRetryError | None:
    """Count a failed attempt and either defer the record or fail it.

    ``max_attempts`` is the subscriber's own retry budget; it can only shorten
    the backoff table, never extend it. Returns the terminal error when the
    record moved to ``failed``.
    """
    record.attempts = (record.attempts or 0) + 1
    record.last_error = error
    record.updated_at = now
    limit = len(table) if max_attempts is None else min(max_attempts, len(table))
    if record.attempts > limit:
        record.status = FAILED
        record.next_try_at = None
        return ExhaustedRetryError(record.id, record.attempts, error)
    record.status = DEFERRED
    record.next_try_at = table.next_try_at(now, record.attempts)
    return None


def reset(record: DeliveryRecord, *, now: datetime) -> None:
    """Put a record back into the pipeline with a clean attempt count."""
    record.status = PENDING
    record.attempts = 0
    record.last_error = None
    record.next_try_at = None
    record.updated_at = now


def is_due(record: DeliveryRecord, now: datetime) -> bool:
    """Return whether the scheduler pass should dispatch the record."""
    if record.status == PENDING:
        return True
    if record.status != DEFERRED:
        return False
    next_try_at = ensure_optional_aware(record.next_try_at)
    return next_try_at is None or next_try_at <= now
