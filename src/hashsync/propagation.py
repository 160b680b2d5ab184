"""Cascading recomputation of dependents and parents after an entity changes.

Each top-level trigger gets its own :class:`PropagationContext`, passed
explicitly down the recursion. Concurrent runs never share a visiting set.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol, TypeVar

from sqlalchemy.orm import Session

from hashsync.config import settings
from hashsync.entities import BoundEntity, EntityRef
from hashsync.errors import ConfigurationError
from hashsync.hashing import graph, store
from hashsync.hashing.engine import CompositeHashEngine, HashUpdateResult
from hashsync.hashing.store import HashSnapshot
from hashsync.logging import fields, log_context
from hashsync.services.database import run_in_session

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIONS = ("created", "updated", "deleting", "deleted")


class DeletionListener(Protocol):
    """Told once an entity's hash record has been removed."""

    def entity_removed(self, ref: EntityRef, last_known: HashSnapshot | None) -> None:
        ...


@dataclass
class PropagationContext:
    """Call-local state for one propagation run."""

    run_id: str
    max_depth: int
    visiting: set[EntityRef] = field(default_factory=set)
    depth: int = 0
    recomputed: set[EntityRef] = field(default_factory=set)

    def should_skip(self, ref: EntityRef) -> bool:
        return ref in self.visiting or self.depth >= self.max_depth

    def enter(self, ref: EntityRef) -> None:
        self.visiting.add(ref)
        self.depth += 1

    def leave(self, ref: EntityRef) -> None:
        self.visiting.discard(ref)
        self.depth -= 1


class SnapshotBuffer:
    """Short-lived store of entities to notify once a deletion completes."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the buffer with an entry lifetime in seconds."""
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[EntityRef, tuple[float, list[BoundEntity]]] = {}
        self._lock = threading.Lock()

    def put(self, ref: EntityRef, entities: list[BoundEntity]) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._entries[ref] = (now + self._ttl, entities)

    def pop(self, ref: EntityRef) -> list[BoundEntity] | None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            entry = self._entries.pop(ref, None)
        if entry is None:
            return None
        return entry[1]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _prune(self, now: float) -> None:
        expired = [ref for ref, (expires_at, _) in self._entries.items() if expires_at <= now]
        for ref in expired:
            del self._entries[ref]


class PropagationEngine:
    """Walk notify relations and the dependency graph after a change."""

    def __init__(
        self,
        engine: CompositeHashEngine,
        session_factory: Callable[[], Session],
        *,
        max_depth: int | None = None,
        snapshot_ttl_seconds: float | None = None,
    ) -> None:
        """Initialize propagation and subscribe to the engine's touch signal."""
        self._engine = engine
        self._session_factory = session_factory
        self._max_depth = max_depth if max_depth is not None else settings.propagation.max_depth
        if self._max_depth < 1:
            raise ConfigurationError("propagation max_depth must be at least 1")
        ttl = (
            snapshot_ttl_seconds
            if snapshot_ttl_seconds is not None
            else settings.propagation.snapshot_ttl_seconds
        )
        self._snapshots = SnapshotBuffer(ttl)
        self._deletion_listeners: list[DeletionListener] = []
        engine.set_touch_listener(self.on_entity_touched)

    @property
    def snapshots(self) -> SnapshotBuffer:
        return self._snapshots

    def add_deletion_listener(self, listener: DeletionListener) -> None:
        self._deletion_listeners.append(listener)

    def new_context(self) -> PropagationContext:
        return PropagationContext(run_id=uuid.uuid4().hex[:12], max_depth=self._max_depth)

    # Write-path entry points. These never raise into the caller's write,
    # except for configuration errors.

    def entity_created(self, bound: BoundEntity) -> HashUpdateResult | None:
        return self._guarded("created", bound.ref, lambda ctx: self._recompute(bound, "created", ctx))

    def entity_updated(self, bound: BoundEntity) -> HashUpdateResult | None:
        return self._guarded("updated", bound.ref, lambda ctx: self._recompute(bound, "updated", ctx))

    def entity_deleting(self, bound: BoundEntity) -> None:
        self._guarded(
            "deleting",
            bound.ref,
            lambda ctx: self.on_entity_touched(bound, "deleting", ctx),
        )

    def entity_deleted(self, ref: EntityRef) -> HashSnapshot | None:
        return self._guarded("deleted", ref, lambda ctx: self.remove_entity(ref, ctx))

    def remove_entity(
        self,
        ref: EntityRef,
        context: PropagationContext | None = None,
    ) -> HashSnapshot | None:
        """Handle a completed deletion; errors propagate to the caller.

        Returns the last stored hash of the removed entity, if it had one.
        """
        ctx = context or self.new_context()
        removed: list[HashSnapshot | None] = []
        self._touch(ref, None, "deleted", ctx, removed)
        return removed[0] if removed else None

    def on_entity_touched(
        self,
        target: BoundEntity | EntityRef,
        action: str,
        context: PropagationContext | None = None,
    ) -> None:
        """React to an entity having been written or removed."""
        if action not in ACTIONS:
            raise ValueError(f"unknown propagation action: {action}")
        if isinstance(target, BoundEntity):
            ref, bound = target.ref, target
        else:
            ref, bound = target, None
        ctx = context or self.new_context()
        self._touch(ref, bound, action, ctx, [])

    def _touch(
        self,
        ref: EntityRef,
        bound: BoundEntity | None,
        action: str,
        ctx: PropagationContext,
        removed: list[HashSnapshot | None],
    ) -> None:
        if ctx.should_skip(ref):
            logger.debug(
                "Propagation guard hit for %s (%s, depth %s)",
                ref,
                action,
                ctx.depth,
            )
            return
        ctx.enter(ref)
        try:
            if action in ("created", "updated"):
                if bound is not None:
                    self._notify_consumers(bound, ctx)
            elif action == "deleting":
                self._snapshot_consumers(ref, bound)
            else:
                removed.append(self._finish_deletion(ref, ctx))
        finally:
            ctx.leave(ref)

    def _recompute(self, bound: BoundEntity, action: str, ctx: PropagationContext) -> HashUpdateResult:
        ctx.recomputed.add(bound.ref)
        return self._engine.update_hash(bound, refresh=True, action=action, context=ctx)

    def _notify_consumers(self, bound: BoundEntity, ctx: PropagationContext) -> None:
        for consumer in self._collect_consumers(bound.ref, bound):
            if consumer.ref in ctx.visiting or consumer.ref in ctx.recomputed:
                continue
            self._recompute(consumer, "updated", ctx)

    def _snapshot_consumers(self, ref: EntityRef, bound: BoundEntity | None) -> None:
        consumers = self._collect_consumers(ref, bound)
        self._snapshots.put(ref, consumers)
        logger.debug("Snapshotted %s entities to notify after %s is deleted", len(consumers), ref)

    def _finish_deletion(self, ref: EntityRef, ctx: PropagationContext) -> HashSnapshot | None:
        snapshot = self._snapshots.pop(ref)
        targets: dict[EntityRef, None] = {}
        for entity in snapshot or []:
            targets.setdefault(entity.ref)
        for consumer_ref in self._graph_consumers(ref):
            targets.setdefault(consumer_ref)

        for target_ref in sorted(targets):
            if target_ref == ref or target_ref in ctx.recomputed:
                continue
            # Reload so relations no longer see the removed entity.
            fresh = self._engine.load(target_ref)
            if fresh is None:
                logger.debug("Skipping %s; it no longer exists", target_ref)
                continue
            self._recompute(fresh, "updated", ctx)

        last_known = run_in_session(self._session_factory, lambda session: store.delete_record(session, ref))
        logger.info("Removed hash record for deleted entity %s", ref)
        for listener in self._deletion_listeners:
            listener.entity_removed(ref, last_known)
        return last_known

    def _collect_consumers(self, ref: EntityRef, bound: BoundEntity | None) -> list[BoundEntity]:
        found: dict[EntityRef, BoundEntity] = {}
        if bound is not None:
            provider = self._engine.providers.get(ref.entity_type)
            for path in provider.notify_relations():
                for target in self._engine.resolve_path(bound, path, refresh=True):
                    found.setdefault(target.ref, target)
        for consumer_ref in self._graph_consumers(ref):
            if consumer_ref in found:
                continue
            loaded = self._engine.load(consumer_ref)
            if loaded is not None:
                found[consumer_ref] = loaded
        found.pop(ref, None)
        return [found[key] for key in sorted(found)]

    def _graph_consumers(self, ref: EntityRef) -> list[EntityRef]:
        return run_in_session(self._session_factory, lambda session: graph.consumers_of(session, ref))

    def _guarded(
        self,
        action: str,
        ref: EntityRef,
        work: Callable[[PropagationContext], T],
    ) -> T | None:
        ctx = self.new_context()
        with log_context({fields.PROPAGATION_RUN: ctx.run_id}):
            try:
                return work(ctx)
            except ConfigurationError:
                raise
            except Exception:
                logger.exception("Propagation failed for %s %s", action, ref)
                return None
