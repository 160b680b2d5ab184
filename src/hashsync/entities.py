"""Typed entity references, relation variants and the entity provider contract.

Entities themselves are opaque to hashsync. Everything the engine needs to know
about an entity (its identity, tracked attributes, declared relations and how
to follow them) is answered by the :class:`EntityProvider` registered for the
entity's type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Protocol, Sequence, runtime_checkable

from hashsync.errors import UnknownEntityType


@dataclass(frozen=True, order=True)
class EntityRef:
    """Polymorphic reference to one entity instance: ``(entity_type, entity_id)``."""

    entity_type: str
    entity_id: str

    @classmethod
    def of(cls, entity_type: str, entity_id: object) -> "EntityRef":
        """Build a reference, normalizing the id to its string form."""
        return cls(entity_type=str(entity_type), entity_id=str(entity_id))

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


@dataclass(frozen=True)
class BoundEntity:
    """An entity object paired with its reference."""

    ref: EntityRef
    entity: Any = field(compare=False)


@dataclass(frozen=True)
class Absent:
    """Relation resolved to nothing (null foreign key, empty relation)."""

    def entities(self) -> tuple[BoundEntity, ...]:
        return ()


@dataclass(frozen=True)
class Single:
    """Relation resolved to exactly one entity."""

    target: BoundEntity

    def entities(self) -> tuple[BoundEntity, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Many:
    """Relation resolved to a collection of entities."""

    targets: tuple[BoundEntity, ...]

    def entities(self) -> tuple[BoundEntity, ...]:
        return self.targets


Related = Absent | Single | Many

ABSENT = Absent()


@runtime_checkable
class EntityProvider(Protocol):
    """Per-type contract between hashsync and the application's data layer."""

    entity_type: str

    def entity_id(self, entity: Any) -> str:
        """Return the identifier of an entity of this type."""
        ...

    def load(self, entity_id: str) -> Any | None:
        """Load an entity by id, returning None when it no longer exists."""
        ...

    def tracked_attributes(self, entity: Any) -> Mapping[str, Any]:
        """Return the tracked attribute values keyed by attribute name."""
        ...

    def dependency_relations(self) -> Sequence[str]:
        """Return relation paths (dot notation) absorbed into the composite hash."""
        ...

    def notify_relations(self) -> Sequence[str]:
        """Return relation paths whose targets must recompute when this entity changes."""
        ...

    def resolve_relation(self, entity: Any, relation: str, *, refresh: bool = False) -> Related:
        """Resolve a single relation hop; ``refresh`` forces a reload from the store."""
        ...

    def iter_entities(self, chunk_size: int) -> Iterator[list[Any]]:
        """Yield every stored entity of this type in chunks."""
        ...


class ProviderRegistry:
    """Lookup table from entity type name to its provider."""

    def __init__(self, providers: Iterable[EntityProvider] = ()) -> None:
        """Initialize the registry with optional providers."""
        self._providers: dict[str, EntityProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: EntityProvider) -> None:
        """Register (or replace) the provider for its entity type."""
        self._providers[provider.entity_type] = provider

    def get(self, entity_type: str) -> EntityProvider:
        """Return the provider for a type or raise UnknownEntityType."""
        try:
            return self._providers[entity_type]
        except KeyError:
            raise UnknownEntityType(entity_type) from None

    def has(self, entity_type: str) -> bool:
        return entity_type in self._providers

    def types(self) -> list[str]:
        return sorted(self._providers)

    def bind(self, entity_type: str, entity: Any) -> BoundEntity:
        """Pair an entity with its reference using the type's provider."""
        provider = self.get(entity_type)
        return BoundEntity(EntityRef.of(entity_type, provider.entity_id(entity)), entity)

    def load(self, ref: EntityRef) -> Any | None:
        """Load the entity behind a reference through its provider."""
        return self.get(ref.entity_type).load(ref.entity_id)


# Process-wide registry populated by registration modules.
_DEFAULT_REGISTRY = ProviderRegistry()


def register_provider(provider: EntityProvider) -> EntityProvider:
    """Register a provider in the default registry; returns it for chaining."""
    _DEFAULT_REGISTRY.register(provider)
    return provider


def default_registry() -> ProviderRegistry:
    return _DEFAULT_REGISTRY
