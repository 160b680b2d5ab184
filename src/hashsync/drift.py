"""Out-of-band reconciliation of stored hashes against the source tables.

Writes that bypass the application (bulk loads, direct SQL, migrations) never
reach the propagation entry points. The drift detector finds them by
recomputing attribute hashes straight from the stored rows, and finds deleted
rows by looking for hash records whose source row is gone.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, TypeVar

from sqlalchemy import Boolean, Column, String, and_, case, cast, func, literal, select, true
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from hashsync.config import settings
from hashsync.entities import EntityRef
from hashsync.errors import ConfigurationError
from hashsync.hashing import codec, store
from hashsync.hashing.engine import CompositeHashEngine, HashUpdateResult
from hashsync.logging import fields, log_context
from hashsync.models import HashRecord
from hashsync.propagation import PropagationEngine
from hashsync.providers import renders_like_codec

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Dialects that can compute the digest themselves. Others only build the
# canonical content in SQL and digest it in-process.
_SERVER_DIGEST_DIALECTS = ("postgresql", "mysql", "mariadb")


@dataclass
class DriftReport:
    """Counts from one drift pass over one entity type."""

    entity_type: str
    mode: str = "in_process"
    scanned: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "mode": self.mode,
            "scanned": self.scanned,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class _ScannedRow:
    entity_id: str
    digest: str
    attribute_hash: str | None
    composite_hash: str | None
    has_record: bool


def content_expression(columns: Mapping[str, Column]) -> ColumnElement:
    """Build SQL reproducing the codec's canonical content for one row.

    Attributes are taken in name order, ``NULL`` becomes an empty string,
    booleans become ``'1'``/``'0'`` and parts are joined with ``|``.
    """
    if not columns:
        raise ConfigurationError("drift content expression needs at least one column")
    parts: list[ColumnElement] = []
    for name in sorted(columns):
        column = columns[name]
        if isinstance(column.type, Boolean):
            part = case(
                (column.is_(None), literal("", String)),
                (column == true(), literal("1", String)),
                else_=literal("0", String),
            )
        else:
            part = func.coalesce(cast(column, String), literal("", String))
        parts.append(part)
    expression = parts[0]
    for part in parts[1:]:
        expression = expression + literal(codec.SEPARATOR, String) + part
    return expression


def digest_expression(content: ColumnElement, algorithm: str, dialect: str) -> ColumnElement | None:
    """Return a server-side digest of ``content``, or None if unsupported."""
    if dialect == "postgresql":
        if algorithm == "md5":
            return func.md5(content)
        return func.encode(func.sha256(func.convert_to(content, "UTF8")), "hex")
    if dialect in ("mysql", "mariadb"):
        if algorithm == "md5":
            return func.md5(content)
        return func.sha2(content, 256)
    return None


class DriftDetector:
    """Find and repair stale, missing and orphaned hash records."""

    def __init__(
        self,
        engine: CompositeHashEngine,
        propagation: PropagationEngine,
        session_factory: Callable[[], Session],
        *,
        chunk_size: int | None = None,
    ) -> None:
        """Initialize the detector with its collaborators."""
        self._engine = engine
        self._propagation = propagation
        self._session_factory = session_factory
        self._chunk_size = chunk_size or settings.drift.chunk_size
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop the running pass at the next chunk boundary."""
        self._cancel.set()

    def run(self, entity_type: str | None = None) -> list[DriftReport]:
        """Run a drift pass for one type or every tracked type."""
        if entity_type is not None:
            types = [entity_type]
        else:
            with closing(self._session_factory()) as session:
                stored_types = store.list_entity_types(session)
            types = sorted(set(stored_types) | set(self._engine.providers.types()))

        reports: list[DriftReport] = []
        try:
            for name in types:
                if self._cancel.is_set():
                    break
                if not self._engine.providers.has(name):
                    logger.warning("Skipping drift pass for %s: no provider registered", name)
                    continue
                reports.append(self._detect_changes(name))
        finally:
            self._cancel.clear()
        return reports

    def detect_changes(self, entity_type: str) -> DriftReport:
        """Update drifted and missing hashes, then remove orphaned ones."""
        try:
            return self._detect_changes(entity_type)
        finally:
            self._cancel.clear()

    def _detect_changes(self, entity_type: str) -> DriftReport:
        provider = self._engine.providers.get(entity_type)
        report = DriftReport(entity_type=entity_type)
        pass_id = uuid.uuid4().hex[:12]
        with log_context({fields.DRIFT_PASS: pass_id, fields.ENTITY_TYPE: entity_type}):
            columns = _source_columns(provider)
            if columns:
                self._scan_with_sql(entity_type, provider, columns, report)
            else:
                self._scan_in_process(entity_type, provider, report)
            if not report.cancelled:
                self._detect_deleted(entity_type, report)
            logger.info(
                "Drift pass for %s (%s): scanned=%s created=%s updated=%s deleted=%s errors=%s",
                entity_type,
                report.mode,
                report.scanned,
                report.created,
                report.updated,
                report.deleted,
                report.errors,
            )
        return report

    def detect_deleted(self, entity_type: str) -> DriftReport:
        """Treat hash records whose source row is gone as deletions."""
        try:
            return self._detect_deleted(entity_type, DriftReport(entity_type=entity_type))
        finally:
            self._cancel.clear()

    def _detect_deleted(self, entity_type: str, report: DriftReport) -> DriftReport:
        provider = self._engine.providers.get(entity_type)
        id_column = _source_id_column(provider)
        for orphan_ids in self._iter_orphans(entity_type, provider, id_column):
            if self._cancel.is_set():
                report.cancelled = True
                break
            for entity_id in orphan_ids:
                ref = EntityRef(entity_type, entity_id)
                ok, _ = self._apply(lambda ref=ref: self._propagation.remove_entity(ref), ref, report)
                if ok:
                    report.deleted += 1
        return report

    def initialize_hashes(self, entity_type: str, chunk_size: int | None = None) -> DriftReport:
        """Create hash records for entities that have none, leaving existing ones alone."""
        try:
            return self._initialize(entity_type, chunk_size or self._chunk_size)
        finally:
            self._cancel.clear()

    def _initialize(self, entity_type: str, chunk_size: int) -> DriftReport:
        provider = self._engine.providers.get(entity_type)
        report = DriftReport(entity_type=entity_type)
        for chunk in provider.iter_entities(chunk_size):
            if self._cancel.is_set():
                report.cancelled = True
                break
            ids = [provider.entity_id(entity) for entity in chunk]
            known = self._known_ids(entity_type, ids)
            for entity, entity_id in zip(chunk, ids):
                report.scanned += 1
                if entity_id in known:
                    continue
                bound = self._engine.providers.bind(entity_type, entity)
                ok, _ = self._apply(
                    lambda bound=bound: self._engine.update_hash(bound, action="created"),
                    bound.ref,
                    report,
                )
                if ok:
                    report.created += 1
        logger.info("Initialized %s hashes for %s", report.created, entity_type)
        return report

    def _scan_with_sql(
        self,
        entity_type: str,
        provider: Any,
        columns: Mapping[str, Column],
        report: DriftReport,
    ) -> None:
        for rows in self._iter_source_rows(entity_type, provider, columns, report):
            if self._cancel.is_set():
                report.cancelled = True
                return
            for row in rows:
                report.scanned += 1
                if row.has_record and row.attribute_hash == row.digest and row.composite_hash:
                    continue
                self._repair(entity_type, row.entity_id, row.has_record, report)

    def _scan_in_process(self, entity_type: str, provider: Any, report: DriftReport) -> None:
        report.mode = "in_process"
        for chunk in provider.iter_entities(self._chunk_size):
            if self._cancel.is_set():
                report.cancelled = True
                return
            bound_chunk = [self._engine.providers.bind(entity_type, entity) for entity in chunk]
            records = self._records_by_id(entity_type, [bound.ref.entity_id for bound in bound_chunk])
            for bound in bound_chunk:
                report.scanned += 1
                record = records.get(bound.ref.entity_id)
                digest = self._engine.compute_attribute_hash(bound)
                if record is not None and record.attribute_hash == digest and record.composite_hash:
                    continue
                action = "updated" if record is not None else "created"
                ok, result = self._apply(
                    lambda bound=bound, action=action: self._engine.update_hash(
                        bound, refresh=True, action=action
                    ),
                    bound.ref,
                    report,
                )
                if ok:
                    _count(report, result, created=record is None)

    def _repair(self, entity_type: str, entity_id: str, has_record: bool, report: DriftReport) -> None:
        ref = EntityRef(entity_type, entity_id)
        bound = self._engine.load(ref)
        if bound is None:
            return
        action = "updated" if has_record else "created"
        ok, result = self._apply(
            lambda: self._engine.update_hash(bound, refresh=True, action=action),
            ref,
            report,
        )
        if ok:
            _count(report, result, created=not has_record)

    def _apply(
        self,
        work: Callable[[], T],
        ref: EntityRef,
        report: DriftReport,
    ) -> tuple[bool, T | None]:
        """Run one repair; failures are counted and logged instead of raised."""
        try:
            return True, work()
        except ConfigurationError:
            raise
        except Exception:
            report.errors += 1
            logger.exception("Drift repair failed for %s", ref)
            return False, None

    def _iter_source_rows(
        self,
        entity_type: str,
        provider: Any,
        columns: Mapping[str, Column],
        report: DriftReport,
    ) -> Iterator[list[_ScannedRow]]:
        id_column = _source_id_column(provider)
        content = content_expression(columns)
        last_id = None
        while True:
            with closing(self._session_factory()) as session:
                dialect = session.get_bind().dialect.name
                server_digest = (
                    digest_expression(content, self._engine.algorithm, dialect)
                    if dialect in _SERVER_DIGEST_DIALECTS
                    else None
                )
                report.mode = "sql_digest" if server_digest is not None else "sql_content"
                statement = (
                    select(
                        id_column,
                        (server_digest if server_digest is not None else content).label("computed"),
                        HashRecord.id,
                        HashRecord.attribute_hash,
                        HashRecord.composite_hash,
                    )
                    .select_from(id_column.table)
                    .outerjoin(
                        HashRecord,
                        and_(
                            HashRecord.entity_type == entity_type,
                            HashRecord.entity_id == cast(id_column, String),
                        ),
                    )
                    .order_by(id_column)
                    .limit(self._chunk_size)
                )
                if last_id is not None:
                    statement = statement.where(id_column > last_id)
                rows = session.execute(statement).all()
            if not rows:
                return
            last_id = rows[-1][0]
            scanned: list[_ScannedRow] = []
            for entity_id, computed, hash_id, attribute_hash, composite_hash in rows:
                digest = (
                    computed
                    if server_digest is not None
                    else codec.digest(computed or "", self._engine.algorithm)
                )
                scanned.append(
                    _ScannedRow(
                        entity_id=str(entity_id),
                        digest=digest,
                        attribute_hash=attribute_hash,
                        composite_hash=composite_hash,
                        has_record=hash_id is not None,
                    )
                )
            yield scanned

    def _iter_orphans(
        self,
        entity_type: str,
        provider: Any,
        id_column: Column | None,
    ) -> Iterator[list[str]]:
        if id_column is not None and _source_columns(provider):
            last_hash_id = 0
            while True:
                with closing(self._session_factory()) as session:
                    rows = session.execute(
                        select(HashRecord.id, HashRecord.entity_id)
                        .outerjoin(
                            id_column.table,
                            cast(id_column, String) == HashRecord.entity_id,
                        )
                        .where(
                            HashRecord.entity_type == entity_type,
                            HashRecord.id > last_hash_id,
                            id_column.is_(None),
                        )
                        .order_by(HashRecord.id)
                        .limit(self._chunk_size)
                    ).all()
                if not rows:
                    return
                last_hash_id = rows[-1][0]
                yield [entity_id for _hash_id, entity_id in rows]
            return

        with closing(self._session_factory()) as session:
            chunks = list(store.iter_records(session, entity_type, self._chunk_size))
        for chunk in chunks:
            yield [
                snapshot.ref.entity_id
                for snapshot in chunk
                if provider.load(snapshot.ref.entity_id) is None
            ]

    def _records_by_id(self, entity_type: str, entity_ids: list[str]) -> dict[str, HashRecord]:
        if not entity_ids:
            return {}
        with closing(self._session_factory()) as session:
            rows = session.execute(
                select(HashRecord).where(
                    HashRecord.entity_type == entity_type,
                    HashRecord.entity_id.in_(entity_ids),
                )
            ).scalars().all()
            session.expunge_all()
        return {row.entity_id: row for row in rows}

    def _known_ids(self, entity_type: str, entity_ids: list[str]) -> set[str]:
        return set(self._records_by_id(entity_type, entity_ids))


def _source_columns(provider: Any) -> Mapping[str, Column] | None:
    getter = getattr(provider, "source_columns", None)
    if getter is None:
        return None
    columns = getter()
    if columns and not all(renders_like_codec(column) for column in columns.values()):
        return None
    return columns


def _source_id_column(provider: Any) -> Column | None:
    getter = getattr(provider, "source_id_column", None)
    if getter is None:
        return None
    return getter()


def _count(report: DriftReport, result: HashUpdateResult | None, *, created: bool) -> None:
    if created:
        report.created += 1
    elif result is not None and result.changed:
        report.updated += 1
