"""Attribute and composite hash computation for tracked entities."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hashsync.config import settings
from hashsync.entities import BoundEntity, EntityRef, ProviderRegistry
from hashsync.errors import ConcurrencyConflict, RelationResolutionError, UnknownEntityType
from hashsync.hashing import codec, graph, store
from hashsync.hashing.graph import Contribution
from hashsync.hashing.store import HashSnapshot
from hashsync.services.database import run_in_session

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class CompositeComputation:
    """Digests of one entity plus the related hashes absorbed into the composite."""

    attribute_hash: str
    composite_hash: str
    contributions: tuple[Contribution, ...]


@dataclass(frozen=True)
class HashUpdateResult:
    """Outcome of ``update_hash``."""

    changed: bool
    record: HashSnapshot


class HashChangeListener(Protocol):
    """Receives committed hash changes (the delivery subsystem implements this)."""

    def hash_changed(self, snapshot: HashSnapshot) -> None:
        ...

    def hash_synced(self, snapshot: HashSnapshot, subscribers: Iterable[str] | None) -> None:
        ...


# (entity, action, propagation context) -> None
TouchListener = Callable[[BoundEntity, str, object], None]


class CompositeHashEngine:
    """Compute and persist attribute and composite hashes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        providers: ProviderRegistry,
        *,
        algorithm: str | None = None,
    ) -> None:
        """Initialize the engine; an unsupported algorithm fails immediately."""
        self._session_factory = session_factory
        self._providers = providers
        self._algorithm = codec.resolve_algorithm(algorithm or settings.hashing.algorithm)
        self._touch_listener: TouchListener | None = None
        self._change_listeners: list[HashChangeListener] = []

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    def set_touch_listener(self, listener: TouchListener | None) -> None:
        """Install the callback told about every ``update_hash`` call."""
        self._touch_listener = listener

    def add_change_listener(self, listener: HashChangeListener) -> None:
        self._change_listeners.append(listener)

    def compute_attribute_hash(self, bound: BoundEntity) -> str:
        """Digest the entity's tracked attributes in attribute-name order."""
        provider = self._providers.get(bound.ref.entity_type)
        return codec.digest_attributes(provider.tracked_attributes(bound.entity), self._algorithm)

    def compute_composite_hash(self, bound: BoundEntity, *, refresh: bool = False) -> str:
        """Digest the entity's attribute hash together with its related attribute hashes.

        When the entity already has a hash record, its dependency and parent
        edges are refreshed to match the relations that were resolved.
        """
        computation = self._compute(bound, refresh=refresh)

        def handler(session: Session) -> None:
            record = store.get_record(session, bound.ref)
            if record is not None:
                graph.sync_edges(session, record, computation.contributions)

        run_in_session(self._session_factory, handler)
        return computation.composite_hash

    def needs_update(self, bound: BoundEntity) -> bool:
        """Return whether the stored digests differ from freshly computed ones."""
        computation = self._compute(bound, refresh=False)

        def handler(session: Session) -> bool:
            record = store.get_record(session, bound.ref)
            if record is None:
                return True
            return (
                record.attribute_hash != computation.attribute_hash
                or record.composite_hash != computation.composite_hash
            )

        return run_in_session(self._session_factory, handler)

    def update_hash(
        self,
        bound: BoundEntity,
        *,
        refresh: bool = False,
        action: str = "updated",
        context: object = None,
    ) -> HashUpdateResult:
        """Recompute and persist an entity's digests.

        Change listeners hear about committed changes only. The touch listener
        is called every time, changed or not, so dependents still get a chance
        to recompute.
        """
        result = self._write(bound, refresh=refresh)
        if result.changed:
            logger.debug(
                "Hash changed for %s (composite %s)",
                bound.ref,
                result.record.composite_hash,
            )
            for listener in self._change_listeners:
                listener.hash_changed(result.record)
        if self._touch_listener is not None:
            self._touch_listener(bound, action, context)
        return result

    def sync_without_publishing(
        self,
        bound: BoundEntity,
        subscribers: Iterable[str] | None = None,
        *,
        context: object = None,
    ) -> HashUpdateResult:
        """Store new digests for data that arrived from a subscriber without echoing it back.

        ``subscribers`` names the subscribers to mark as already holding the
        new hash; ``None`` means every active subscriber of the type.
        """
        result = self._write(bound, refresh=True)
        if result.changed:
            names = list(subscribers) if subscribers is not None else None
            for listener in self._change_listeners:
                listener.hash_synced(result.record, names)
        if self._touch_listener is not None:
            self._touch_listener(bound, "updated", context)
        return result

    def _write(self, bound: BoundEntity, *, refresh: bool) -> HashUpdateResult:
        """Compute-then-compare-and-write, recomputing on a concurrent write."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            computation = self._compute(bound, refresh=refresh or attempt > 1)

            def handler(session: Session) -> HashUpdateResult:
                record, changed = store.save_digests(
                    session,
                    bound.ref,
                    computation.attribute_hash,
                    computation.composite_hash,
                )
                graph.sync_edges(session, record, computation.contributions)
                return HashUpdateResult(changed=changed, record=HashSnapshot.from_record(record))

            try:
                return run_in_session(self._session_factory, handler)
            except (StaleDataError, IntegrityError) as exc:
                logger.info(
                    "Concurrent hash write for %s (attempt %s/%s): %s",
                    bound.ref,
                    attempt,
                    MAX_WRITE_ATTEMPTS,
                    exc,
                )
        raise ConcurrencyConflict(bound.ref.entity_type, bound.ref.entity_id)

    def _compute(self, bound: BoundEntity, *, refresh: bool) -> CompositeComputation:
        attribute_hash = self.compute_attribute_hash(bound)
        provider = self._providers.get(bound.ref.entity_type)
        digests = [attribute_hash]
        contributions: list[Contribution] = []
        for path in provider.dependency_relations():
            for target in self.resolve_path(bound, path, refresh=refresh):
                try:
                    target_hash = self.compute_attribute_hash(target)
                except UnknownEntityType as exc:
                    logger.warning("Skipping %s via %s on %s: %s", target.ref, path, bound.ref, exc)
                    continue
                digests.append(target_hash)
                contributions.append(Contribution(target.ref, path, target_hash))
        composite_hash = codec.combine_digests(digests, self._algorithm)
        return CompositeComputation(attribute_hash, composite_hash, tuple(contributions))

    def resolve_path(
        self,
        bound: BoundEntity,
        path: str,
        *,
        refresh: bool = False,
    ) -> list[BoundEntity]:
        """Follow a dotted relation path one hop at a time.

        A hop that fails to resolve contributes nothing; the remaining hops and
        relations are still evaluated.
        """
        frontier = [bound]
        for hop in path.split("."):
            following: list[BoundEntity] = []
            for current in frontier:
                try:
                    provider = self._providers.get(current.ref.entity_type)
                    related = provider.resolve_relation(current.entity, hop, refresh=refresh)
                except (RelationResolutionError, UnknownEntityType) as exc:
                    logger.warning(
                        "Relation %r (hop %r) skipped for %s: %s",
                        path,
                        hop,
                        current.ref,
                        exc,
                    )
                    continue
                following.extend(related.entities())
            frontier = following
        return frontier

    def load(self, ref: EntityRef) -> BoundEntity | None:
        """Load an entity through its provider, or None when gone or untracked."""
        try:
            entity = self._providers.load(ref)
        except UnknownEntityType:
            logger.warning("No provider for %s; cannot reload it", ref)
            return None
        if entity is None:
            return None
        return BoundEntity(ref, entity)
