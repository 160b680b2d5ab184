"""Pytest configuration for the hashsync test suite."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))
sys.path.insert(0, str(Path(__file__).resolve().parent))


def _ensure_test_env() -> None:
    """Seed environment variables so tests never pick up a developer's setup."""
    os.environ.setdefault("HASHSYNC_HASH_ALGORITHM", "md5")
    os.environ.setdefault("HASHSYNC_LOG_JSON", "false")


_ensure_test_env()

from hashsync.delivery.callbacks import CallbackRegistry  # noqa: E402
from hashsync.entities import ProviderRegistry  # noqa: E402
from hashsync.models import Base  # noqa: E402
from hashsync.runtime import HashSync, build_runtime  # noqa: E402
from helpers.app import AppBase, Clock, build_providers  # noqa: E402


@pytest.fixture
def sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory backed by a temp file."""
    db_path = tmp_path / "hashsync.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    Base.metadata.create_all(engine)
    AppBase.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def providers(sqlite_session_factory: sessionmaker) -> ProviderRegistry:
    return build_providers(sqlite_session_factory)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def runtime(
    sqlite_session_factory: sessionmaker,
    providers: ProviderRegistry,
) -> Generator[HashSync, None, None]:
    """Assemble every component against the temp database."""
    built = build_runtime(
        sqlite_session_factory,
        providers=providers,
        callbacks=CallbackRegistry(providers),
        registration_modules=[],
    )
    yield built
    built.close()
