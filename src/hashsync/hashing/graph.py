"""Dependency and parent edges between hash records.

Forward edges (``hash_dependents``) answer "which hashes must recompute when
this entity changes". Backward edges (``hash_parents``) answer "which parents
absorbed this child's hash, via which relation". Both are rewritten from the
contributions collected during a composite hash computation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from hashsync.entities import EntityRef
from hashsync.hashing import store
from hashsync.models import DependencyEdge, HashRecord, ParentEdge


@dataclass(frozen=True)
class Contribution:
    """One related entity whose attribute hash was absorbed into a composite hash."""

    ref: EntityRef
    relation: str
    attribute_hash: str


def sync_edges(
    session: Session,
    dependent: HashRecord,
    contributions: Iterable[Contribution],
) -> None:
    """Make the edges of ``dependent`` match the latest contributions exactly."""
    owner = EntityRef(dependent.entity_type, dependent.entity_id)
    wanted: dict[EntityRef, Contribution] = {}
    for contribution in contributions:
        if contribution.ref == owner:
            continue
        wanted.setdefault(contribution.ref, contribution)

    existing = {
        EntityRef(edge.source_type, edge.source_id): edge
        for edge in session.execute(
            select(DependencyEdge).where(DependencyEdge.dependent_hash_id == dependent.id)
        ).scalars()
    }
    for ref, edge in existing.items():
        if ref not in wanted:
            session.delete(edge)
    for ref, contribution in wanted.items():
        edge = existing.get(ref)
        if edge is None:
            session.add(
                DependencyEdge(
                    dependent_hash_id=dependent.id,
                    source_type=ref.entity_type,
                    source_id=ref.entity_id,
                    relation_name=contribution.relation,
                )
            )
        elif edge.relation_name != contribution.relation:
            edge.relation_name = contribution.relation

    child_records: dict[EntityRef, HashRecord] = {}
    for ref, contribution in wanted.items():
        child = store.ensure_record(session, ref, contribution.attribute_hash)
        store.set_owner_if_missing(session, child, owner)
        child_records[ref] = child

    stale_parent_edges = session.execute(
        select(ParentEdge).where(
            ParentEdge.parent_type == owner.entity_type,
            ParentEdge.parent_id == owner.entity_id,
        )
    ).scalars()
    wanted_child_ids = {record.id for record in child_records.values()}
    for edge in stale_parent_edges:
        if edge.child_hash_id not in wanted_child_ids:
            session.delete(edge)

    for ref, child in child_records.items():
        relation = wanted[ref].relation
        edge = session.execute(
            select(ParentEdge).where(
                ParentEdge.child_hash_id == child.id,
                ParentEdge.parent_type == owner.entity_type,
                ParentEdge.parent_id == owner.entity_id,
            )
        ).scalar_one_or_none()
        if edge is None:
            session.add(
                ParentEdge(
                    child_hash_id=child.id,
                    parent_type=owner.entity_type,
                    parent_id=owner.entity_id,
                    relation_name=relation,
                )
            )
        elif edge.relation_name != relation:
            edge.relation_name = relation
    session.flush()


def dependents_of(session: Session, ref: EntityRef) -> list[EntityRef]:
    """Return entities whose composite hash depends on ``ref``."""
    rows = session.execute(
        select(HashRecord.entity_type, HashRecord.entity_id)
        .join(DependencyEdge, DependencyEdge.dependent_hash_id == HashRecord.id)
        .where(
            DependencyEdge.source_type == ref.entity_type,
            DependencyEdge.source_id == ref.entity_id,
        )
    ).all()
    return sorted({EntityRef(entity_type, entity_id) for entity_type, entity_id in rows})


def parents_of(session: Session, ref: EntityRef) -> list[tuple[EntityRef, str]]:
    """Return ``(parent, relation)`` pairs recorded for the entity's hash."""
    rows = session.execute(
        select(ParentEdge.parent_type, ParentEdge.parent_id, ParentEdge.relation_name)
        .join(HashRecord, HashRecord.id == ParentEdge.child_hash_id)
        .where(
            HashRecord.entity_type == ref.entity_type,
            HashRecord.entity_id == ref.entity_id,
        )
        .order_by(ParentEdge.parent_type, ParentEdge.parent_id)
    ).all()
    return [(EntityRef(parent_type, parent_id), relation) for parent_type, parent_id, relation in rows]


def consumers_of(session: Session, ref: EntityRef) -> list[EntityRef]:
    """Return every entity that must be told when ``ref`` changes or disappears.

    Combines forward dependents, recorded parents and the owning aggregate.
    """
    found = set(dependents_of(session, ref))
    found.update(parent for parent, _relation in parents_of(session, ref))
    record = store.get_record(session, ref)
    if record is not None and record.owner_type and record.owner_id:
        found.add(EntityRef(record.owner_type, record.owner_id))
    found.discard(ref)
    return sorted(found)


def edge_counts(session: Session, ref: EntityRef) -> tuple[int, int]:
    """Return how many dependency and parent edges mention ``ref`` in any role."""
    record = store.get_record(session, ref)
    hash_id = record.id if record is not None else -1
    dependency_count = len(
        session.execute(
            select(DependencyEdge.id).where(
                or_(
                    DependencyEdge.dependent_hash_id == hash_id,
                    and_(
                        DependencyEdge.source_type == ref.entity_type,
                        DependencyEdge.source_id == ref.entity_id,
                    ),
                )
            )
        ).all()
    )
    parent_count = len(
        session.execute(
            select(ParentEdge.id).where(
                or_(
                    ParentEdge.child_hash_id == hash_id,
                    and_(
                        ParentEdge.parent_type == ref.entity_type,
                        ParentEdge.parent_id == ref.entity_id,
                    ),
                )
            )
        ).all()
    )
    return dependency_count, parent_count
