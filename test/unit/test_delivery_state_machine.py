"""Unit tests for delivery record transitions."""

from datetime import datetime, timedelta, timezone

import pytest

from hashsync.delivery import state_machine
from hashsync.delivery.backoff import BackoffTable
from hashsync.errors import ExhaustedRetryError
from hashsync.models import DeliveryRecord

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
TABLE = BackoffTable((30, 300, 21600))


def _pending(delivered_hash: str = "h1") -> DeliveryRecord:
    record = DeliveryRecord(subscriber_id=1, hash_id=1)
    state_machine.mark_pending(record, delivered_hash, now=NOW)
    return record


def test_mark_pending_starts_fresh_cycle() -> None:
    """A new hash clears attempts, errors and retry time."""
    record = _pending()
    record.attempts = 2
    record.last_error = "boom"
    record.next_try_at = NOW

    state_machine.mark_pending(record, "h2", now=NOW)

    assert record.status == state_machine.PENDING
    assert record.delivered_hash == "h2"
    assert record.attempts == 0
    assert record.last_error is None
    assert record.next_try_at is None


def test_three_failures_defer_and_fourth_fails() -> None:
    """With a three-step table the fourth failure is terminal."""
    record = _pending()
    now = NOW
    for attempt, delay in enumerate((30, 300, 21600), start=1):
        state_machine.mark_dispatched(record, now=now)
        assert state_machine.record_failure(record, "down", TABLE, now=now) is None
        assert record.status == state_machine.DEFERRED
        assert record.attempts == attempt
        assert record.next_try_at == now + timedelta(seconds=delay)
        now = record.next_try_at

    state_machine.mark_dispatched(record, now=now)
    exhausted = state_machine.record_failure(record, "down", TABLE, now=now)

    assert isinstance(exhausted, ExhaustedRetryError)
    assert exhausted.attempts == 4
    assert record.status == state_machine.FAILED
    assert record.next_try_at is None
    assert record.last_error == "down"


def test_max_attempts_shortens_table() -> None:
    """A subscriber budget of one retry fails on the second failure."""
    record = _pending()

    assert state_machine.record_failure(record, "e1", TABLE, now=NOW, max_attempts=1) is None
    assert record.status == state_machine.DEFERRED
    assert state_machine.record_failure(record, "e2", TABLE, now=NOW, max_attempts=1) is not None
    assert record.status == state_machine.FAILED


def test_max_attempts_never_extends_table() -> None:
    record = _pending()
    for _ in range(3):
        state_machine.record_failure(record, "e", TABLE, now=NOW, max_attempts=10)

    state_machine.record_failure(record, "e", TABLE, now=NOW, max_attempts=10)

    assert record.status == state_machine.FAILED


def test_mark_dispatched_requires_due_record() -> None:
    """Deferred records cannot be dispatched before their retry time."""
    record = _pending()
    state_machine.record_failure(record, "e", TABLE, now=NOW)

    with pytest.raises(state_machine.InvalidTransition):
        state_machine.mark_dispatched(record, now=NOW + timedelta(seconds=10))

    state_machine.mark_dispatched(record, now=NOW + timedelta(seconds=30))
    assert record.status == state_machine.DISPATCHED


def test_is_due_by_status() -> None:
    record = _pending()
    assert state_machine.is_due(record, NOW)

    state_machine.mark_published(record, now=NOW)
    assert not state_machine.is_due(record, NOW)

    record.status = state_machine.DEFERRED
    record.next_try_at = (NOW + timedelta(seconds=5)).replace(tzinfo=None)
    assert not state_machine.is_due(record, NOW)
    assert state_machine.is_due(record, NOW + timedelta(seconds=5))


def test_reset_returns_failed_record_to_pending() -> None:
    record = _pending()
    for _ in range(4):
        state_machine.record_failure(record, "e", TABLE, now=NOW)
    assert record.status == state_machine.FAILED

    state_machine.reset(record, now=NOW)

    assert record.status == state_machine.PENDING
    assert record.attempts == 0
    assert record.last_error is None


def test_mark_published_clears_error() -> None:
    record = _pending()
    state_machine.record_failure(record, "e", TABLE, now=NOW)

    state_machine.mark_published(record, now=NOW)

    assert record.status == state_machine.PUBLISHED
    assert record.published_at == NOW
    assert record.last_error is None
