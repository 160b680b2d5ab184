"""Create hash, dependency graph, subscriber and delivery tables.

Revision ID: 0001_hash_tables
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_hash_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the hashsync schema."""
    subscriber_status_enum = sa.Enum(
        "active",
        "inactive",
        name="subscriber_status",
        native_enum=False,
    )
    delivery_status_enum = sa.Enum(
        "pending",
        "dispatched",
        "published",
        "deferred",
        "failed",
        name="delivery_status",
        native_enum=False,
    )

    op.create_table(
        "hashes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=200), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("attribute_hash", sa.String(length=64), nullable=False),
        sa.Column("composite_hash", sa.String(length=64), nullable=True),
        sa.Column("owner_type", sa.String(length=200), nullable=True),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_hashes_entity"),
    )
    op.create_index("ix_hashes_owner", "hashes", ["owner_type", "owner_id"])

    op.create_table(
        "hash_dependents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "dependent_hash_id",
            sa.Integer(),
            sa.ForeignKey("hashes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(length=200), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=False),
        sa.Column("relation_name", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "dependent_hash_id",
            "source_type",
            "source_id",
            name="uq_hash_dependents_edge",
        ),
    )
    op.create_index(
        "ix_hash_dependents_source",
        "hash_dependents",
        ["source_type", "source_id"],
    )

    op.create_table(
        "hash_parents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "child_hash_id",
            sa.Integer(),
            sa.ForeignKey("hashes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("parent_type", sa.String(length=200), nullable=False),
        sa.Column("parent_id", sa.String(length=64), nullable=False),
        sa.Column("relation_name", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "child_hash_id",
            "parent_type",
            "parent_id",
            name="uq_hash_parents_edge",
        ),
    )
    op.create_index("ix_hash_parents_parent", "hash_parents", ["parent_type", "parent_id"])

    op.create_table(
        "subscribers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("target_entity_type", sa.String(length=200), nullable=False),
        sa.Column("callback", sa.String(length=200), nullable=False),
        sa.Column("status", subscriber_status_enum, nullable=False),
        sa.Column("config", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'inactive')",
            name="ck_subscribers_status",
        ),
    )
    op.create_index(
        "ix_subscribers_type_status",
        "subscribers",
        ["target_entity_type", "status"],
    )

    op.create_table(
        "deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "hash_id",
            sa.Integer(),
            sa.ForeignKey("hashes.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "subscriber_id",
            sa.Integer(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("delivered_hash", sa.String(length=64), nullable=False),
        sa.Column("status", delivery_status_enum, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_try_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("hash_id", "subscriber_id", name="uq_deliveries_hash_subscriber"),
        sa.CheckConstraint(
            "status IN ('pending', 'dispatched', 'published', 'deferred', 'failed')",
            name="ck_deliveries_status",
        ),
    )
    op.create_index(
        "ix_deliveries_status_next_try",
        "deliveries",
        ["status", "next_try_at"],
    )


def downgrade() -> None:
    """Drop the hashsync schema."""
    op.drop_index("ix_deliveries_status_next_try", table_name="deliveries")
    op.drop_table("deliveries")
    op.drop_index("ix_subscribers_type_status", table_name="subscribers")
    op.drop_table("subscribers")
    op.drop_index("ix_hash_parents_parent", table_name="hash_parents")
    op.drop_table("hash_parents")
    op.drop_index("ix_hash_dependents_source", table_name="hash_dependents")
    op.drop_table("hash_dependents")
    op.drop_index("ix_hashes_owner", table_name="hashes")
    op.drop_table("hashes")
