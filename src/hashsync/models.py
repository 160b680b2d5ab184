"""Persisted state for hash tracking, the dependency graph and deliveries."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

# SQLAlchemy base
Base = declarative_base()

SubscriberStatusEnum = Enum(
    "active",
    "inactive",
    name="subscriber_status",
    native_enum=False,
)
DeliveryStatusEnum = Enum(
    "pending",
    "dispatched",
    "published",
    "deferred",
    "failed",
    name="delivery_status",
    native_enum=False,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HashRecord(Base):
    """Attribute and composite digest for one trackable entity instance."""

    __tablename__ = "hashes"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_hashes_entity"),
        Index("ix_hashes_owner", "owner_type", "owner_id"),
    )

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(200), nullable=False)
    entity_id = Column(String(64), nullable=False)
    attribute_hash = Column(String(64), nullable=False)
    composite_hash = Column(String(64), nullable=True)
    owner_type = Column(String(200), nullable=True)
    owner_id = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    dependents = relationship(
        "DependencyEdge",
        back_populates="dependent_hash",
        cascade="all, delete-orphan",
    )
    parents = relationship(
        "ParentEdge",
        back_populates="child_hash",
        cascade="all, delete-orphan",
    )
    deliveries = relationship(
        "DeliveryRecord",
        back_populates="hash_record",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}


class DependencyEdge(Base):
    """The dependent hash must recompute when the source entity changes."""

    __tablename__ = "hash_dependents"
    __table_args__ = (
        UniqueConstraint(
            "dependent_hash_id",
            "source_type",
            "source_id",
            name="uq_hash_dependents_edge",
        ),
        Index("ix_hash_dependents_source", "source_type", "source_id"),
    )

    id = Column(Integer, primary_key=True)
    dependent_hash_id = Column(
        Integer,
        ForeignKey("hashes.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_type = Column(String(200), nullable=False)
    source_id = Column(String(64), nullable=False)
    relation_name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    dependent_hash = relationship("HashRecord", back_populates="dependents")


class ParentEdge(Base):
    """The child hash is a declared dependency of the parent via a relation."""

    __tablename__ = "hash_parents"
    __table_args__ = (
        UniqueConstraint(
            "child_hash_id",
            "parent_type",
            "parent_id",
            name="uq_hash_parents_edge",
        ),
        Index("ix_hash_parents_parent", "parent_type", "parent_id"),
    )

    id = Column(Integer, primary_key=True)
    child_hash_id = Column(
        Integer,
        ForeignKey("hashes.id", ondelete="CASCADE"),
        nullable=False,
    )
    parent_type = Column(String(200), nullable=False)
    parent_id = Column(String(64), nullable=False)
    relation_name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    child_hash = relationship("HashRecord", back_populates="parents")


class Subscriber(Base):
    """Downstream consumer of change notifications for one entity type."""

    __tablename__ = "subscribers"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive')",
            name="ck_subscribers_status",
        ),
        Index("ix_subscribers_type_status", "target_entity_type", "status"),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    target_entity_type = Column(String(200), nullable=False)
    callback = Column(String(200), nullable=False)
    status = Column(SubscriberStatusEnum, nullable=False, default="active")
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    deliveries = relationship(
        "DeliveryRecord",
        back_populates="subscriber",
        cascade="all, delete-orphan",
    )


class DeliveryRecord(Base):
    """Delivery of one hash value (or deletion notice) to one subscriber."""

    __tablename__ = "deliveries"
    __table_args__ = (
        UniqueConstraint("hash_id", "subscriber_id", name="uq_deliveries_hash_subscriber"),
        CheckConstraint(
            "status IN ('pending', 'dispatched', 'published', 'deferred', 'failed')",
            name="ck_deliveries_status",
        ),
        Index("ix_deliveries_status_next_try", "status", "next_try_at"),
    )

    id = Column(Integer, primary_key=True)
    hash_id = Column(Integer, ForeignKey("hashes.id", ondelete="CASCADE"), nullable=True)
    subscriber_id = Column(
        Integer,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
    )
    delivered_hash = Column(String(64), nullable=False)
    status = Column(DeliveryStatusEnum, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_try_at = Column(DateTime(timezone=True), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    # Deletion notices carry their own snapshot since the hash row is gone.
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    hash_record = relationship("HashRecord", back_populates="deliveries")
    subscriber = relationship("Subscriber", back_populates="deliveries")

    @property
    def is_deletion(self) -> bool:
        return self.hash_id is None and bool(self.details) and self.details.get("type") == "deletion"
