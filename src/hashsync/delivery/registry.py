"""Subscriber registry with a short-lived cache of active subscribers."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hashsync.config import settings
from hashsync.delivery.callbacks import CallbackRegistry, default_callbacks
from hashsync.delivery.state_machine import IN_FLIGHT
from hashsync.errors import SubscriberInUse, SubscriberNotFound
from hashsync.models import DeliveryRecord, Subscriber
from hashsync.services.database import run_in_session
from hashsync.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriberInfo:
    """Detached view of a subscriber row."""

    id: int
    name: str
    target_entity_type: str
    callback: str
    status: str
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_row(cls, row: Subscriber) -> "SubscriberInfo":
        return cls(
            id=row.id,
            name=row.name,
            target_entity_type=row.target_entity_type,
            callback=row.callback,
            status=row.status,
            config=dict(row.config or {}),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "target_entity_type": self.target_entity_type,
            "callback": self.callback,
            "status": self.status,
            "config": self.config,
        }


class SubscriberRegistry:
    """Read-mostly access to subscribers plus their management operations."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        callbacks: CallbackRegistry | None = None,
        *,
        cache_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry with persistence and callback lookup."""
        self._session_factory = session_factory
        self._callbacks = callbacks or default_callbacks()
        self._ttl = (
            cache_ttl_seconds
            if cache_ttl_seconds is not None
            else settings.delivery.subscriber_cache_ttl_seconds
        )
        self._clock = clock
        self._cache: dict[str, tuple[float, list[SubscriberInfo]]] = {}
        self._lock = threading.Lock()

    @property
    def callbacks(self) -> CallbackRegistry:
        return self._callbacks

    def find_active(self, entity_type: str) -> list[SubscriberInfo]:
        """Return active subscribers for a type, served from cache when fresh."""
        now = self._clock()
        with self._lock:
            cached = self._cache.get(entity_type)
            if cached is not None and cached[0] > now:
                return list(cached[1])
        with closing(self._session_factory()) as session:
            rows = session.execute(
                select(Subscriber)
                .where(
                    Subscriber.target_entity_type == entity_type,
                    Subscriber.status == "active",
                )
                .order_by(Subscriber.id)
            ).scalars().all()
            subscribers = [SubscriberInfo.from_row(row) for row in rows]
        with self._lock:
            self._cache[entity_type] = (now + self._ttl, subscribers)
        return list(subscribers)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def register(
        self,
        name: str,
        entity_type: str,
        callback: str,
        *,
        config: dict[str, Any] | None = None,
        active: bool = True,
    ) -> SubscriberInfo:
        """Create a subscriber; the callback must be known and the name unique."""
        if not name.strip():
            raise ValueError("subscriber name is required.")
        if not entity_type.strip():
            raise ValueError("target entity type is required.")
        # Fails with ConfigurationError for unknown callback names.
        self._callbacks.create(callback, config)

        def handler(session: Session) -> SubscriberInfo:
            now = utc_now()
            row = Subscriber(
                name=name,
                target_entity_type=entity_type,
                callback=callback,
                status="active" if active else "inactive",
                config=config or {},
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return SubscriberInfo.from_row(row)

        try:
            info = run_in_session(self._session_factory, handler)
        except IntegrityError as exc:
            raise ValueError(f"subscriber {name!r} already exists.") from exc
        self.invalidate()
        logger.info("Registered subscriber %s for %s via %s", name, entity_type, callback)
        return info

    def list_subscribers(self, entity_type: str | None = None) -> list[SubscriberInfo]:
        with closing(self._session_factory()) as session:
            statement = select(Subscriber).order_by(Subscriber.name)
            if entity_type is not None:
                statement = statement.where(Subscriber.target_entity_type == entity_type)
            return [SubscriberInfo.from_row(row) for row in session.execute(statement).scalars()]

    def get(self, name: str) -> SubscriberInfo:
        with closing(self._session_factory()) as session:
            return SubscriberInfo.from_row(_require(session, name))

    def get_by_id(self, subscriber_id: int) -> SubscriberInfo:
        with closing(self._session_factory()) as session:
            row = session.get(Subscriber, subscriber_id)
            if row is None:
                raise SubscriberNotFound(subscriber_id)
            return SubscriberInfo.from_row(row)

    def activate(self, name: str) -> SubscriberInfo:
        return self._set_status(name, "active")

    def deactivate(self, name: str) -> SubscriberInfo:
        return self._set_status(name, "inactive")

    def delete(self, name: str) -> None:
        """Delete a subscriber and its delivery history.

        Refused while any of its deliveries are pending or dispatched.
        """

        def handler(session: Session) -> None:
            row = _require(session, name)
            in_flight = session.execute(
                select(func.count(DeliveryRecord.id)).where(
                    DeliveryRecord.subscriber_id == row.id,
                    DeliveryRecord.status.in_(IN_FLIGHT),
                )
            ).scalar_one()
            if in_flight:
                raise SubscriberInUse(name, in_flight)
            session.delete(row)

        run_in_session(self._session_factory, handler)
        self.invalidate()
        logger.info("Deleted subscriber %s", name)

    def _set_status(self, name: str, status: str) -> SubscriberInfo:
        def handler(session: Session) -> SubscriberInfo:
            row = _require(session, name)
            row.status = status
            row.updated_at = utc_now()
            session.flush()
            return SubscriberInfo.from_row(row)

        info = run_in_session(self._session_factory, handler)
        self.invalidate()
        logger.info("Subscriber %s is now %s", name, status)
        return info


def _require(session: Session, name: str) -> Subscriber:
    row = session.execute(select(Subscriber).where(Subscriber.name == name)).scalar_one_or_none()
    if row is None:
        raise SubscriberNotFound(name)
    return row
