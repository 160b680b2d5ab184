"""Integration tests for change propagation across related entities."""

from __future__ import annotations

import hashlib

import pytest

from hashsync.entities import BoundEntity, EntityRef
from hashsync.errors import ConfigurationError
from hashsync.hashing import graph, store
from hashsync.hashing.engine import CompositeHashEngine
from hashsync.propagation import PropagationContext, PropagationEngine, SnapshotBuffer
from helpers.app import Part, add_category, add_part, add_product, bound, build_providers


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class RecordingListener:
    """Change listener collecting the refs whose hash changed."""

    def __init__(self) -> None:
        self.changed: list[EntityRef] = []

    def hash_changed(self, snapshot) -> None:
        self.changed.append(snapshot.ref)

    def hash_synced(self, snapshot, subscribers) -> None:
        self.changed.append(snapshot.ref)


def _record(factory, ref: EntityRef):
    with factory() as session:
        record = store.get_record(session, ref)
        return store.HashSnapshot.from_record(record) if record is not None else None


def _spy_updates(monkeypatch, engine: CompositeHashEngine) -> list[EntityRef]:
    calls: list[EntityRef] = []
    original = engine.update_hash

    def update_hash(entity, **kwargs):
        calls.append(entity.ref)
        return original(entity, **kwargs)

    monkeypatch.setattr(engine, "update_hash", update_hash)
    return calls


def test_part_update_recomputes_owning_product(runtime, sqlite_session_factory) -> None:
    """Changing a part's value changes the product's composite hash."""
    product_id = add_product(sqlite_session_factory)
    part_id = add_part(sqlite_session_factory, product_id, "x")
    runtime.propagation.entity_created(bound(runtime, "product", product_id))
    product_ref = EntityRef.of("product", product_id)
    before = _record(sqlite_session_factory, product_ref)

    with sqlite_session_factory() as session:
        session.get(Part, part_id).val = "y"
        session.commit()
    runtime.propagation.entity_updated(bound(runtime, "part", part_id))

    after = _record(sqlite_session_factory, product_ref)
    assert after.attribute_hash == before.attribute_hash
    assert after.composite_hash != before.composite_hash
    assert after.composite_hash == _md5("|".join(sorted([_md5("A|10"), _md5("1|y")])))


def test_new_part_notifies_product(runtime, sqlite_session_factory) -> None:
    product_id = add_product(sqlite_session_factory)
    runtime.propagation.entity_created(bound(runtime, "product", product_id))

    part_id = add_part(sqlite_session_factory, product_id, "x")
    runtime.propagation.entity_created(bound(runtime, "part", part_id))

    with sqlite_session_factory() as session:
        assert graph.dependents_of(session, EntityRef.of("part", part_id)) == [
            EntityRef.of("product", product_id)
        ]


def test_bidirectional_relations_terminate(sqlite_session_factory, monkeypatch) -> None:
    """Mutual dependencies recompute each entity once and stop."""
    providers = build_providers(
        sqlite_session_factory,
        product={"notify": ["parts", "category"]},
        part={"dependencies": ["product"]},
    )
    engine = CompositeHashEngine(sqlite_session_factory, providers, algorithm="md5")
    propagation = PropagationEngine(engine, sqlite_session_factory)
    product_id = add_product(sqlite_session_factory)
    part_id = add_part(sqlite_session_factory, product_id)
    part_entity = engine.load(EntityRef.of("part", part_id))
    calls = _spy_updates(monkeypatch, engine)

    propagation.entity_updated(part_entity)

    assert calls == [EntityRef.of("part", part_id), EntityRef.of("product", product_id)]


def test_depth_guard_stops_cascade(sqlite_session_factory, monkeypatch) -> None:
    """With max depth one, a grandparent is not recomputed."""
    providers = build_providers(sqlite_session_factory)
    category_id = add_category(sqlite_session_factory)
    product_id = add_product(sqlite_session_factory, category_id=category_id)
    part_id = add_part(sqlite_session_factory, product_id)
    category_ref = EntityRef.of("category", category_id)

    deep_engine = CompositeHashEngine(sqlite_session_factory, providers, algorithm="md5")
    PropagationEngine(deep_engine, sqlite_session_factory, max_depth=10)
    deep_calls = _spy_updates(monkeypatch, deep_engine)
    deep_engine.update_hash(deep_engine.load(EntityRef.of("part", part_id)))
    assert category_ref in deep_calls

    shallow_engine = CompositeHashEngine(sqlite_session_factory, providers, algorithm="md5")
    PropagationEngine(shallow_engine, sqlite_session_factory, max_depth=1)
    shallow_calls = _spy_updates(monkeypatch, shallow_engine)
    shallow_engine.update_hash(shallow_engine.load(EntityRef.of("part", part_id)))
    assert shallow_calls == [EntityRef.of("part", part_id), EntityRef.of("product", product_id)]


def test_invalid_max_depth_is_configuration_error(sqlite_session_factory, providers) -> None:
    engine = CompositeHashEngine(sqlite_session_factory, providers, algorithm="md5")
    with pytest.raises(ConfigurationError):
        PropagationEngine(engine, sqlite_session_factory, max_depth=0)


def test_deletion_changes_parent_once_and_clears_edges(runtime, sqlite_session_factory) -> None:
    """Deleting a part recomputes its product exactly once and drops every edge."""
    product_id = add_product(sqlite_session_factory, "A", 10)
    part_id = add_part(sqlite_session_factory, product_id, "x")
    runtime.propagation.entity_created(bound(runtime, "product", product_id))
    part_ref = EntityRef.of("part", part_id)
    product_ref = EntityRef.of("product", product_id)
    listener = RecordingListener()
    runtime.engine.add_change_listener(listener)

    runtime.propagation.entity_deleting(bound(runtime, "part", part_id))
    assert len(runtime.propagation.snapshots) == 1
    with sqlite_session_factory() as session:
        session.delete(session.get(Part, part_id))
        session.commit()
    last_known = runtime.propagation.entity_deleted(part_ref)

    assert last_known is not None
    assert last_known.attribute_hash == _md5("1|x")
    assert listener.changed == [product_ref]
    assert _record(sqlite_session_factory, part_ref) is None
    assert _record(sqlite_session_factory, product_ref).composite_hash == _md5(_md5("A|10"))
    assert len(runtime.propagation.snapshots) == 0
    with sqlite_session_factory() as session:
        assert graph.edge_counts(session, part_ref) == (0, 0)
        assert graph.edge_counts(session, product_ref) == (0, 0)


def test_deleted_without_snapshot_uses_graph(runtime, sqlite_session_factory) -> None:
    """A deletion reported without a prior snapshot still reaches the product."""
    product_id = add_product(sqlite_session_factory, "A", 10)
    part_id = add_part(sqlite_session_factory, product_id, "x")
    runtime.propagation.entity_created(bound(runtime, "product", product_id))

    with sqlite_session_factory() as session:
        session.delete(session.get(Part, part_id))
        session.commit()
    runtime.propagation.entity_deleted(EntityRef.of("part", part_id))

    product = _record(sqlite_session_factory, EntityRef.of("product", product_id))
    assert product.composite_hash == _md5(_md5("A|10"))


def test_write_path_entry_points_swallow_errors(runtime) -> None:
    """Propagation failures are logged instead of raised into the caller."""
    ghost = BoundEntity(EntityRef("ghost", "1"), object())

    assert runtime.propagation.entity_updated(ghost) is None
    assert runtime.propagation.entity_deleted(EntityRef("ghost", "1")) is None


def test_unknown_action_rejected(runtime) -> None:
    with pytest.raises(ValueError):
        runtime.propagation.on_entity_touched(EntityRef("product", "1"), "renamed")


def test_context_guards_visiting_and_depth() -> None:
    ctx = PropagationContext(run_id="r", max_depth=2)
    first = EntityRef("product", "1")
    second = EntityRef("part", "2")

    ctx.enter(first)
    assert ctx.should_skip(first)
    assert not ctx.should_skip(second)
    ctx.enter(second)
    assert ctx.should_skip(EntityRef("part", "3"))
    ctx.leave(second)
    ctx.leave(first)
    assert ctx.depth == 0
    assert not ctx.should_skip(first)


def test_snapshot_buffer_expires_entries() -> None:
    ticks = [0.0]
    buffer = SnapshotBuffer(10, clock=lambda: ticks[0])
    ref = EntityRef("part", "1")

    buffer.put(ref, [])
    ticks[0] = 11.0

    assert buffer.pop(ref) is None
    assert len(buffer) == 0
