"""Entity provider for SQLAlchemy-mapped application models."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Mapping, Sequence

from sqlalchemy import Boolean, Column, Enum, Integer, String, inspect as sa_inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, object_session, scoped_session

from hashsync.entities import ABSENT, BoundEntity, EntityRef, Many, Related, Single
from hashsync.errors import ConfigurationError, RelationResolutionError

logger = logging.getLogger(__name__)

# Session.info flag marking sessions owned by a provider rather than the caller.
_PROVIDER_SESSION = "hashsync_provider"


def renders_like_codec(column: Column) -> bool:
    """Whether casting the column to text in SQL matches the codec's rendering.

    Dates, decimals and floats are formatted differently by each backend.
    """
    column_type = column.type
    if isinstance(column_type, Enum):
        return False
    return isinstance(column_type, (String, Integer, Boolean))


class SqlAlchemyEntityProvider:
    """Expose an ORM model's columns and relationships to the hash engine.

    ``relations`` maps each relationship attribute on the model to the entity
    type of its target, which must have its own provider. ``dependencies`` and
    ``notify`` are relation paths in dot notation starting at this model.
    """

    def __init__(
        self,
        entity_type: str,
        model: type,
        session_factory: Callable[[], Session],
        *,
        attributes: Sequence[str],
        relations: Mapping[str, str] | None = None,
        dependencies: Sequence[str] = (),
        notify: Sequence[str] = (),
        id_attribute: str = "id",
        scan_source: bool = True,
    ) -> None:
        """Initialize the provider and validate declared attributes."""
        if not attributes:
            raise ConfigurationError(f"provider {entity_type!r} declares no tracked attributes")
        mapper = sa_inspect(model)
        if len(mapper.primary_key) != 1:
            raise ConfigurationError(
                f"provider {entity_type!r}: {model.__name__} must have a single-column primary key"
            )
        missing = [name for name in (*attributes, id_attribute) if name not in mapper.attrs]
        if missing:
            raise ConfigurationError(
                f"provider {entity_type!r}: unknown attributes on {model.__name__}: {', '.join(missing)}"
            )
        self.entity_type = entity_type
        self.model = model
        self._sessions = scoped_session(session_factory)
        self._attributes = tuple(attributes)
        self._relations = dict(relations or {})
        self._dependencies = tuple(dependencies)
        self._notify = tuple(notify)
        self._id_attribute = id_attribute
        self._scan_source = scan_source

    def entity_id(self, entity: Any) -> str:
        return str(getattr(entity, self._id_attribute))

    def load(self, entity_id: str) -> Any | None:
        session = self._session()
        statement = (
            select(self.model)
            .where(self._id_column() == self._coerce_id(entity_id))
            .execution_options(populate_existing=True)
        )
        entity = session.execute(statement).scalar_one_or_none()
        session.commit()
        return entity

    def tracked_attributes(self, entity: Any) -> dict[str, Any]:
        return {name: getattr(entity, name) for name in self._attributes}

    def dependency_relations(self) -> tuple[str, ...]:
        return self._dependencies

    def notify_relations(self) -> tuple[str, ...]:
        return self._notify

    def resolve_relation(self, entity: Any, relation: str, *, refresh: bool = False) -> Related:
        """Resolve one relationship hop into Absent, Single or Many."""
        entity_id = self.entity_id(entity)
        target_type = self._relations.get(relation)
        if target_type is None:
            raise RelationResolutionError(
                self.entity_type, entity_id, relation, "relation is not declared"
            )
        try:
            session = object_session(entity)
            if session is None:
                session = self._session()
                entity = session.merge(entity, load=True)
            if refresh:
                session.expire(entity, [relation])
            value = getattr(entity, relation)
            if refresh and value is not None:
                items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
                for item in items:
                    session.refresh(item)
            if session.info.get(_PROVIDER_SESSION):
                session.commit()
        except SQLAlchemyError as exc:
            raise RelationResolutionError(self.entity_type, entity_id, relation, str(exc)) from exc

        if value is None:
            return ABSENT
        if isinstance(value, (list, tuple, set, frozenset)):
            return Many(tuple(self._bind(target_type, item) for item in value))
        return Single(self._bind(target_type, value))

    def iter_entities(self, chunk_size: int) -> Iterator[list[Any]]:
        """Yield entities ordered by id using keyset pagination."""
        session = self._session()
        id_column = self._id_column()
        last_id = None
        while True:
            statement = select(self.model).order_by(id_column).limit(chunk_size)
            if last_id is not None:
                statement = statement.where(id_column > last_id)
            rows = session.execute(statement.execution_options(populate_existing=True)).scalars().all()
            session.commit()
            if not rows:
                return
            last_id = getattr(rows[-1], self._id_attribute)
            yield list(rows)

    def source_columns(self) -> dict[str, Column] | None:
        """Return tracked attribute columns for server-side drift hashing.

        ``None`` means the drift detector must recompute in-process.
        """
        if not self._scan_source:
            return None
        table = getattr(self.model, "__table__", None)
        if table is None:
            return None
        columns: dict[str, Column] = {}
        for name in self._attributes:
            prop = sa_inspect(self.model).attrs[name]
            prop_columns = getattr(prop, "columns", None)
            if not prop_columns or prop_columns[0].table is not table:
                return None
            if not renders_like_codec(prop_columns[0]):
                return None
            columns[name] = prop_columns[0]
        return columns

    def source_id_column(self) -> Column:
        return sa_inspect(self.model).attrs[self._id_attribute].columns[0]

    def close(self) -> None:
        self._sessions.remove()

    def _session(self) -> Session:
        # Loaded entities outlive the read transaction, which is ended eagerly.
        session = self._sessions()
        session.expire_on_commit = False
        session.info[_PROVIDER_SESSION] = True
        return session

    def _id_column(self) -> Column:
        return getattr(self.model, self._id_attribute)

    def _coerce_id(self, entity_id: str) -> Any:
        column = sa_inspect(self.model).attrs[self._id_attribute].columns[0]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return entity_id
        if python_type is str:
            return entity_id
        try:
            return python_type(entity_id)
        except (TypeError, ValueError):
            return entity_id

    def _bind(self, target_type: str, target: Any) -> BoundEntity:
        identity = sa_inspect(target).mapper.primary_key_from_instance(target)
        if len(identity) != 1:
            raise RelationResolutionError(
                target_type, str(identity), "primary key", "composite keys cannot be tracked"
            )
        return BoundEntity(EntityRef.of(target_type, identity[0]), target)
