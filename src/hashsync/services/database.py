"""Database engine and session management."""

import logging
from contextlib import closing
from pathlib import Path
from typing import Callable, TypeVar

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from hashsync.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> Engine:
    """Return the process-wide engine for the configured database URL."""
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database.url, pool_pre_ping=True)
    return _engine


def get_session() -> Session:
    """Return a new synchronous session bound to the configured engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _session_factory()


def run_in_session(session_factory: Callable[[], Session], handler: Callable[[Session], T]) -> T:
    """Execute work inside a managed session, committing on success."""
    with closing(session_factory()) as session:
        session.expire_on_commit = False
        try:
            result = handler(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
    return result


def _run_migrations() -> None:
    alembic_ini = Path(__file__).resolve().parents[3] / "alembic.ini"
    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database.url)
    command.upgrade(alembic_cfg, "head")


def init_db() -> None:
    """Apply database migrations up to head."""
    _run_migrations()
    logger.info("Database migrations applied")
