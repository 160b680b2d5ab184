"""Unit tests for SQLAlchemy provider construction checks."""

from __future__ import annotations

import pytest
from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import declarative_base

from hashsync.errors import ConfigurationError
from hashsync.providers import SqlAlchemyEntityProvider

OtherBase = declarative_base()


class Seat(OtherBase):
    __tablename__ = "seats"

    row = Column(String(2), primary_key=True)
    number = Column(Integer, primary_key=True)
    label = Column(String(20))


class Room(OtherBase):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True)
    label = Column(String(20))


def _no_sessions():
    raise AssertionError("construction must not open sessions")


def test_composite_primary_key_is_rejected() -> None:
    """Entities need a single-column key so their references can be reloaded."""
    with pytest.raises(ConfigurationError, match="single-column primary key"):
        SqlAlchemyEntityProvider("seat", Seat, _no_sessions, attributes=["label"])


def test_unknown_attributes_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="unknown attributes"):
        SqlAlchemyEntityProvider("room", Room, _no_sessions, attributes=["colour"])


def test_plain_columns_are_exposed_for_sql_scans() -> None:
    provider = SqlAlchemyEntityProvider("room", Room, _no_sessions, attributes=["label"])

    columns = provider.source_columns()
    assert list(columns) == ["label"]
    assert columns["label"] is Room.__table__.c.label
    assert provider.source_id_column() is Room.__table__.c.id
