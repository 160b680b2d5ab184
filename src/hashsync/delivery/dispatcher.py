"""Creation and dispatch of delivery records.

The dispatcher listens to committed hash changes and deletions, keeps one
delivery record per (hash, subscriber), and runs subscriber callbacks under a
timeout. Callback failures never escape: they become state transitions.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from hashsync.config import settings
from hashsync.delivery import state_machine
from hashsync.delivery.backoff import BackoffTable
from hashsync.delivery.callbacks import DeletionCallback
from hashsync.delivery.registry import SubscriberInfo, SubscriberRegistry
from hashsync.entities import BoundEntity, EntityRef, ProviderRegistry
from hashsync.errors import DeliveryError, DeliveryNotFound, SubscriberNotFound
from hashsync.hashing.store import HashSnapshot
from hashsync.logging import fields, log_context
from hashsync.models import DeliveryRecord, HashRecord, Subscriber
from hashsync.services.database import run_in_session
from hashsync.time_utils import ensure_optional_aware, utc_now

logger = logging.getLogger(__name__)

# Called with the id of every record that became pending.
Submitter = Callable[[int], None]

_SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryInfo:
    """Operator-facing view of a delivery record."""

    id: int
    subscriber: str
    entity_type: str | None
    entity_id: str | None
    delivered_hash: str
    status: str
    attempts: int
    last_error: str | None
    next_try_at: datetime | None
    published_at: datetime | None
    is_deletion: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscriber": self.subscriber,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "delivered_hash": self.delivered_hash,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_try_at": self.next_try_at.isoformat() if self.next_try_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "is_deletion": self.is_deletion,
        }


@dataclass(frozen=True)
class _Claim:
    """What a dispatch needs after the record was flagged as dispatched."""

    delivery_id: int
    delivered_hash: str
    subscriber: SubscriberInfo
    ref: EntityRef | None
    details: dict[str, Any] | None


class DeliveryDispatcher:
    """Enqueue delivery records and run subscriber callbacks against them."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        subscribers: SubscriberRegistry,
        providers: ProviderRegistry,
        *,
        backoff: BackoffTable | None = None,
        timeout_seconds: float | None = None,
        batch_size: int | None = None,
        max_workers: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the dispatcher; an empty backoff table fails immediately."""
        self._session_factory = session_factory
        self._subscribers = subscribers
        self._providers = providers
        self._backoff = backoff or BackoffTable.from_settings()
        self._timeout = timeout_seconds or settings.delivery.timeout_seconds
        self._batch_size = batch_size or settings.delivery.batch_size
        workers = max_workers or settings.delivery.max_workers
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hashsync-delivery")
        # One slot per worker thread, held until the callback itself returns.
        self._slots = threading.BoundedSemaphore(workers)
        self._clock = clock
        self._submitter: Submitter | None = None

    @property
    def backoff(self) -> BackoffTable:
        return self._backoff

    def set_submitter(self, submitter: Submitter | None) -> None:
        """Hand new pending records to a worker pool as they are created."""
        self._submitter = submitter

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # Listener hooks called by the hash engine and propagation engine.

    def hash_changed(self, snapshot: HashSnapshot) -> list[int]:
        """Create or refresh pending deliveries for a changed hash."""
        subscribers = self._subscribers.find_active(snapshot.ref.entity_type)
        if not subscribers:
            return []
        delivered_hash = snapshot.composite_hash or snapshot.attribute_hash

        def handler(session: Session) -> list[int]:
            now = self._clock()
            created: list[int] = []
            for subscriber in subscribers:
                record = _record_for(session, snapshot.hash_id, subscriber.id)
                if record is None:
                    record = DeliveryRecord(
                        hash_id=snapshot.hash_id,
                        subscriber_id=subscriber.id,
                        created_at=now,
                    )
                    session.add(record)
                elif record.delivered_hash == delivered_hash:
                    continue
                state_machine.mark_pending(record, delivered_hash, now=now)
                session.flush()
                created.append(record.id)
            return created

        pending = run_in_session(self._session_factory, handler)
        self._submit(pending)
        return pending

    def hash_synced(self, snapshot: HashSnapshot, subscribers: Iterable[str] | None) -> None:
        """Record that subscribers already hold a hash they sent us themselves."""
        active = self._subscribers.find_active(snapshot.ref.entity_type)
        if subscribers is not None:
            wanted = set(subscribers)
            active = [subscriber for subscriber in active if subscriber.name in wanted]
        delivered_hash = snapshot.composite_hash or snapshot.attribute_hash

        def handler(session: Session) -> None:
            now = self._clock()
            for subscriber in active:
                record = _record_for(session, snapshot.hash_id, subscriber.id)
                if record is None:
                    record = DeliveryRecord(
                        hash_id=snapshot.hash_id,
                        subscriber_id=subscriber.id,
                        created_at=now,
                    )
                    session.add(record)
                state_machine.mark_pending(record, delivered_hash, now=now)
                state_machine.mark_published(record, now=now)

        run_in_session(self._session_factory, handler)
        logger.debug(
            "Synced %s without publishing for %s subscribers",
            snapshot.ref,
            len(active),
        )

    def entity_removed(self, ref: EntityRef, last_known: HashSnapshot | None) -> list[int]:
        """Queue deletion notices for subscribers whose callback accepts them."""
        targets = [
            subscriber
            for subscriber in self._subscribers.find_active(ref.entity_type)
            if self._supports_deletion(subscriber)
        ]
        if not targets:
            return []
        deleted_at = self._clock()
        notice = {
            "type": "deletion",
            "entity_type": ref.entity_type,
            "entity_id": ref.entity_id,
            "last_known": {
                "attribute_hash": last_known.attribute_hash if last_known else None,
                "composite_hash": last_known.composite_hash if last_known else None,
                "deleted_at": deleted_at.isoformat(),
            },
        }
        delivered_hash = ""
        if last_known is not None:
            delivered_hash = last_known.composite_hash or last_known.attribute_hash

        def handler(session: Session) -> list[int]:
            created: list[int] = []
            for subscriber in targets:
                record = DeliveryRecord(
                    hash_id=None,
                    subscriber_id=subscriber.id,
                    created_at=deleted_at,
                )
                state_machine.mark_pending(record, delivered_hash, now=deleted_at, details=notice)
                session.add(record)
                session.flush()
                created.append(record.id)
            return created

        pending = run_in_session(self._session_factory, handler)
        logger.info("Queued %s deletion notices for %s", len(pending), ref)
        self._submit(pending)
        return pending

    # Dispatch.

    def dispatch(self, delivery_id: int) -> str:
        """Run the subscriber callback for one due record; returns the new status.

        While every worker is busy the record is left unclaimed and its
        current status is returned, so it is picked up by a later pass.
        """
        if not self._slots.acquire(blocking=False):
            logger.debug("Delivery workers busy; leaving %s for a later pass", delivery_id)
            return self._status_of(delivery_id)
        handed_off = False
        try:
            claim = self._claim(delivery_id)
            if isinstance(claim, str):
                return claim
            with log_context(
                {fields.DELIVERY_ID: delivery_id, fields.SUBSCRIBER: claim.subscriber.name}
            ):
                error: str | None = None
                max_attempts: int | None = None
                try:
                    callback = self._subscribers.callbacks.create(
                        claim.subscriber.callback, claim.subscriber.config
                    )
                    max_attempts = callback.max_attempts()
                    future, started = self._start(callback, claim)
                    handed_off = True
                    self._await(future, started)
                except DeliveryError as exc:
                    error = str(exc)
                except Exception as exc:
                    error = f"{type(exc).__name__}: {exc}"
                return self._settle(claim, error, max_attempts)
        finally:
            if not handed_off:
                self._slots.release()

    def run_due(self, limit: int | None = None) -> dict[str, int]:
        """Dispatch every due record once; returns counts by resulting status."""
        counts: dict[str, int] = {}
        for delivery_id in self.due_ids(limit):
            status = self.dispatch(delivery_id)
            counts[status] = counts.get(status, 0) + 1
        if counts:
            logger.info("Scheduler pass dispatched %s", counts)
        return counts

    def due_ids(self, limit: int | None = None) -> list[int]:
        """Return ids of pending records and deferred records whose retry time has come."""
        now = self._clock()
        with closing(self._session_factory()) as session:
            return list(
                session.execute(
                    select(DeliveryRecord.id)
                    .where(
                        or_(
                            DeliveryRecord.status == state_machine.PENDING,
                            and_(
                                DeliveryRecord.status == state_machine.DEFERRED,
                                or_(
                                    DeliveryRecord.next_try_at.is_(None),
                                    DeliveryRecord.next_try_at <= now,
                                ),
                            ),
                        )
                    )
                    .order_by(DeliveryRecord.id)
                    .limit(limit or self._batch_size)
                ).scalars()
            )

    # Operator actions.

    def reset(self, delivery_id: int) -> DeliveryInfo:
        """Clear attempts and errors so the record re-enters the pipeline."""

        def handler(session: Session) -> int:
            record = session.get(DeliveryRecord, delivery_id)
            if record is None:
                raise DeliveryNotFound(delivery_id)
            state_machine.reset(record, now=self._clock())
            return record.id

        run_in_session(self._session_factory, handler)
        self._submit([delivery_id])
        return self.get(delivery_id)

    def reset_failed(self, subscriber_name: str | None = None) -> int:
        """Reset every failed record, optionally for one subscriber only."""

        def handler(session: Session) -> list[int]:
            statement = select(DeliveryRecord).where(
                DeliveryRecord.status == state_machine.FAILED
            )
            if subscriber_name is not None:
                subscriber = session.execute(
                    select(Subscriber).where(Subscriber.name == subscriber_name)
                ).scalar_one_or_none()
                if subscriber is None:
                    raise SubscriberNotFound(subscriber_name)
                statement = statement.where(DeliveryRecord.subscriber_id == subscriber.id)
            now = self._clock()
            ids: list[int] = []
            for record in session.execute(statement).scalars():
                state_machine.reset(record, now=now)
                ids.append(record.id)
            return ids

        reset_ids = run_in_session(self._session_factory, handler)
        logger.info("Reset %s failed deliveries", len(reset_ids))
        self._submit(reset_ids)
        return len(reset_ids)

    def get(self, delivery_id: int) -> DeliveryInfo:
        with closing(self._session_factory()) as session:
            row = session.execute(_info_query().where(DeliveryRecord.id == delivery_id)).first()
        if row is None:
            raise DeliveryNotFound(delivery_id)
        return _to_info(row)

    def list_by_status(
        self,
        status: str | None = None,
        *,
        subscriber_name: str | None = None,
        limit: int = 100,
    ) -> list[DeliveryInfo]:
        """Return deliveries for operators, newest first."""
        statement = _info_query().order_by(DeliveryRecord.id.desc()).limit(limit)
        if status is not None:
            statement = statement.where(DeliveryRecord.status == status)
        if subscriber_name is not None:
            statement = statement.where(Subscriber.name == subscriber_name)
        with closing(self._session_factory()) as session:
            rows = session.execute(statement).all()
        return [_to_info(row) for row in rows]

    def _claim(self, delivery_id: int) -> _Claim | str:
        def handler(session: Session) -> _Claim | str:
            record = session.get(DeliveryRecord, delivery_id)
            if record is None:
                raise DeliveryNotFound(delivery_id)
            now = self._clock()
            if not state_machine.is_due(record, now):
                logger.debug("Delivery %s not due (status=%s)", delivery_id, record.status)
                return record.status
            state_machine.mark_dispatched(record, now=now)
            subscriber = SubscriberInfo.from_row(record.subscriber)
            ref = None
            if record.hash_record is not None:
                ref = EntityRef(record.hash_record.entity_type, record.hash_record.entity_id)
            return _Claim(
                delivery_id=record.id,
                delivered_hash=record.delivered_hash,
                subscriber=subscriber,
                ref=ref,
                details=dict(record.details) if record.details else None,
            )

        return run_in_session(self._session_factory, handler)

    def _status_of(self, delivery_id: int) -> str:
        with closing(self._session_factory()) as session:
            record = session.get(DeliveryRecord, delivery_id)
            if record is None:
                raise DeliveryNotFound(delivery_id)
            return record.status

    def _start(self, callback: Any, claim: _Claim) -> tuple[Future, threading.Event]:
        """Submit the callback; the worker frees its slot when the callback returns."""
        started = threading.Event()

        def run() -> str:
            started.set()
            try:
                return self._call(callback, claim)
            finally:
                self._slots.release()

        return self._executor.submit(run), started

    def _await(self, future: Future, started: threading.Event) -> str:
        """Wait for the callback, timing it from the moment it starts running."""
        while not started.wait(0.05):
            if future.done():
                break
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            raise DeliveryError(f"callback timed out after {self._timeout}s") from None

    def _call(self, callback: Any, claim: _Claim) -> str:
        if claim.details and claim.details.get("type") == "deletion":
            entity_type = claim.details["entity_type"]
            entity_id = claim.details["entity_id"]
            if not callback.should_deliver_deletion(entity_type, entity_id):
                return _SKIPPED
            ok = callback.deliver_deletion(entity_type, entity_id, claim.details.get("last_known") or {})
        else:
            if claim.ref is None:
                raise DeliveryError("delivery has no hash record to publish")
            entity = self._providers.load(claim.ref)
            if entity is None:
                raise DeliveryError(f"entity {claim.ref} no longer exists")
            bound = BoundEntity(claim.ref, entity)
            if not callback.should_deliver(bound):
                return _SKIPPED
            ok = callback.deliver(bound, callback.build_payload(bound))
        if not ok:
            raise DeliveryError("callback reported failure")
        return state_machine.PUBLISHED

    def _settle(self, claim: _Claim, error: str | None, max_attempts: int | None) -> str:
        def handler(session: Session) -> str:
            record = session.get(DeliveryRecord, claim.delivery_id)
            if record is None:
                return "gone"
            if (
                record.status != state_machine.DISPATCHED
                or record.delivered_hash != claim.delivered_hash
            ):
                # A newer hash restarted the cycle while the callback ran.
                return record.status
            now = self._clock()
            if error is None:
                state_machine.mark_published(record, now=now)
                return record.status
            exhausted = state_machine.record_failure(
                record,
                error,
                self._backoff,
                now=now,
                max_attempts=max_attempts,
            )
            if exhausted is not None:
                logger.error("%s", exhausted)
            else:
                logger.warning(
                    "Delivery %s failed (attempt %s), retry at %s: %s",
                    record.id,
                    record.attempts,
                    record.next_try_at.isoformat(),
                    error,
                )
            return record.status

        return run_in_session(self._session_factory, handler)

    def _supports_deletion(self, subscriber: SubscriberInfo) -> bool:
        callback = self._subscribers.callbacks.create(subscriber.callback, subscriber.config)
        return isinstance(callback, DeletionCallback)

    def _submit(self, delivery_ids: list[int]) -> None:
        if self._submitter is None:
            return
        for delivery_id in delivery_ids:
            self._submitter(delivery_id)


def _record_for(session: Session, hash_id: int, subscriber_id: int) -> DeliveryRecord | None:
    return session.execute(
        select(DeliveryRecord).where(
            DeliveryRecord.hash_id == hash_id,
            DeliveryRecord.subscriber_id == subscriber_id,
        )
    ).scalar_one_or_none()


def _info_query():
    return (
        select(
            DeliveryRecord,
            Subscriber.name,
            HashRecord.entity_type,
            HashRecord.entity_id,
        )
        .join(Subscriber, Subscriber.id == DeliveryRecord.subscriber_id)
        .outerjoin(HashRecord, HashRecord.id == DeliveryRecord.hash_id)
    )


def _to_info(row: Any) -> DeliveryInfo:
    record, subscriber_name, entity_type, entity_id = row
    if record.is_deletion:
        entity_type = record.details.get("entity_type")
        entity_id = record.details.get("entity_id")
    return DeliveryInfo(
        id=record.id,
        subscriber=subscriber_name,
        entity_type=entity_type,
        entity_id=entity_id,
        delivered_hash=record.delivered_hash,
        status=record.status,
        attempts=record.attempts,
        last_error=record.last_error,
        next_try_at=ensure_optional_aware(record.next_try_at),
        published_at=ensure_optional_aware(record.published_at),
        is_deletion=record.is_deletion,
    )
