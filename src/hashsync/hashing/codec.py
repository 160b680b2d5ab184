"""Canonical value normalization and digest helpers.

The digest of an attribute set is computed over the normalized values of the
attributes sorted by name, joined with ``|``. Composite digests are computed the
same way over a sorted list of digests. Both forms must stay byte-for-byte
reproducible by the SQL expressions built in :mod:`hashsync.drift`.
"""

from __future__ import annotations

import hashlib
from typing import Any, Iterable, Mapping

from hashsync.config import SUPPORTED_ALGORITHMS
from hashsync.errors import ConfigurationError

SEPARATOR = "|"


def resolve_algorithm(name: str) -> str:
    """Validate a digest algorithm name, raising ConfigurationError if unsupported."""
    normalized = (name or "").strip().lower()
    if normalized not in SUPPORTED_ALGORITHMS:
        raise ConfigurationError(
            f"Unsupported hash algorithm {name!r}; expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
        )
    return normalized


def normalize(value: Any) -> str:
    """Return the canonical string form of a tracked value."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def digest(content: str, algorithm: str) -> str:
    """Hash text content with the configured algorithm, returning hex."""
    if algorithm == "sha256":
        return hashlib.sha256(content.encode("utf-8")).hexdigest()
    if algorithm == "md5":
        return hashlib.md5(content.encode("utf-8")).hexdigest()
    raise ConfigurationError(f"Unsupported hash algorithm {algorithm!r}")


def canonical_content(attributes: Mapping[str, Any]) -> str:
    """Join normalized attribute values in attribute-name order."""
    return SEPARATOR.join(normalize(attributes[name]) for name in sorted(attributes))


def digest_attributes(attributes: Mapping[str, Any], algorithm: str) -> str:
    """Digest an attribute mapping independent of its declaration order."""
    return digest(canonical_content(attributes), algorithm)


def digest_values(ordered_values: Iterable[str], algorithm: str) -> str:
    """Digest already-ordered string values joined with the separator."""
    return digest(SEPARATOR.join(ordered_values), algorithm)


def combine_digests(digests: Iterable[str], algorithm: str) -> str:
    """Digest a collection of digests after sorting them lexicographically."""
    return digest_values(sorted(digests), algorithm)
