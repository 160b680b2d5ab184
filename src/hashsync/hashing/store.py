"""Data access for per-entity hash records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from hashsync.entities import EntityRef
from hashsync.models import DeliveryRecord, DependencyEdge, HashRecord, ParentEdge
from hashsync.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HashSnapshot:
    """Detached copy of a hash record, safe to use after its session closes."""

    hash_id: int
    ref: EntityRef
    attribute_hash: str
    composite_hash: str | None
    owner: EntityRef | None = None

    @classmethod
    def from_record(cls, record: HashRecord) -> "HashSnapshot":
        owner = None
        if record.owner_type and record.owner_id:
            owner = EntityRef(record.owner_type, record.owner_id)
        return cls(
            hash_id=record.id,
            ref=EntityRef(record.entity_type, record.entity_id),
            attribute_hash=record.attribute_hash,
            composite_hash=record.composite_hash,
            owner=owner,
        )


def get_record(session: Session, ref: EntityRef) -> HashRecord | None:
    """Return the hash record for an entity reference, if any."""
    return session.execute(
        select(HashRecord).where(
            HashRecord.entity_type == ref.entity_type,
            HashRecord.entity_id == ref.entity_id,
        )
    ).scalar_one_or_none()


def save_digests(
    session: Session,
    ref: EntityRef,
    attribute_hash: str,
    composite_hash: str | None,
    *,
    now: datetime | None = None,
) -> tuple[HashRecord, bool]:
    """Create or update a record, returning it and whether anything changed.

    Updates are guarded by the record's version column, so a concurrent writer
    surfaces as ``StaleDataError`` at flush time.
    """
    timestamp = now or utc_now()
    record = get_record(session, ref)
    if record is None:
        record = HashRecord(
            entity_type=ref.entity_type,
            entity_id=ref.entity_id,
            attribute_hash=attribute_hash,
            composite_hash=composite_hash,
            created_at=timestamp,
            updated_at=timestamp,
        )
        session.add(record)
        session.flush()
        return record, True
    if record.attribute_hash == attribute_hash and record.composite_hash == composite_hash:
        return record, False
    record.attribute_hash = attribute_hash
    record.composite_hash = composite_hash
    record.updated_at = timestamp
    session.flush()
    return record, True


def ensure_record(session: Session, ref: EntityRef, attribute_hash: str) -> HashRecord:
    """Return the record for a related entity, creating an attribute-only one if missing."""
    record = get_record(session, ref)
    if record is not None:
        return record
    timestamp = utc_now()
    record = HashRecord(
        entity_type=ref.entity_type,
        entity_id=ref.entity_id,
        attribute_hash=attribute_hash,
        composite_hash=None,
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(record)
    session.flush()
    return record


def set_owner_if_missing(session: Session, record: HashRecord, owner: EntityRef) -> bool:
    """Attribute a record to its aggregate root the first time a parent observes it."""
    if record.owner_type and record.owner_id:
        return False
    record.owner_type = owner.entity_type
    record.owner_id = owner.entity_id
    session.flush()
    return True


def delete_record(session: Session, ref: EntityRef) -> HashSnapshot | None:
    """Delete a record with its edges and hash-bound deliveries.

    Edges that reference the entity polymorphically (as a dependency source or
    as a parent) are removed as well.
    """
    record = get_record(session, ref)
    if record is None:
        return None
    snapshot = HashSnapshot.from_record(record)
    session.execute(
        delete(DependencyEdge).where(
            DependencyEdge.source_type == ref.entity_type,
            DependencyEdge.source_id == ref.entity_id,
        )
    )
    session.execute(
        delete(ParentEdge).where(
            ParentEdge.parent_type == ref.entity_type,
            ParentEdge.parent_id == ref.entity_id,
        )
    )
    session.execute(delete(DependencyEdge).where(DependencyEdge.dependent_hash_id == record.id))
    session.execute(delete(ParentEdge).where(ParentEdge.child_hash_id == record.id))
    session.execute(delete(DeliveryRecord).where(DeliveryRecord.hash_id == record.id))
    session.expire(record)
    session.delete(record)
    session.flush()
    return snapshot


def list_entity_types(session: Session) -> list[str]:
    """Return every entity type that has at least one hash record."""
    rows = session.execute(select(HashRecord.entity_type).distinct()).scalars().all()
    return sorted(rows)


def iter_records(
    session: Session,
    entity_type: str,
    chunk_size: int,
) -> Iterator[list[HashSnapshot]]:
    """Yield snapshots of a type's records in id order, one chunk at a time."""
    last_id = 0
    while True:
        rows = (
            session.execute(
                select(HashRecord)
                .where(HashRecord.entity_type == entity_type, HashRecord.id > last_id)
                .order_by(HashRecord.id)
                .limit(chunk_size)
            )
            .scalars()
            .all()
        )
        if not rows:
            return
        last_id = rows[-1].id
        yield [HashSnapshot.from_record(row) for row in rows]
