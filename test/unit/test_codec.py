"""Unit tests for value normalization and digest helpers."""

import hashlib

import pytest

from hashsync.errors import ConfigurationError
from hashsync.hashing import codec


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, ""),
        (True, "1"),
        (False, "0"),
        (0, "0"),
        (10, "10"),
        ("", ""),
        ("abc", "abc"),
    ],
)
def test_normalize_canonical_forms(value, expected) -> None:
    """None, booleans and scalars normalize to stable strings."""
    assert codec.normalize(value) == expected


def test_digest_attributes_sorted_by_name() -> None:
    """Attribute digests join values in attribute-name order."""
    first = codec.digest_attributes({"price": 10, "name": "A"}, "md5")
    second = codec.digest_attributes({"name": "A", "price": 10}, "md5")

    assert first == second == _md5("A|10")


def test_null_and_empty_string_collide() -> None:
    """A null attribute hashes the same as an empty string."""
    assert codec.digest_attributes({"a": None, "b": 1}, "md5") == codec.digest_attributes(
        {"a": "", "b": 1}, "md5"
    )


def test_combine_digests_is_order_independent() -> None:
    """Composite digests sort their inputs before hashing."""
    digests = [_md5("b"), _md5("a"), _md5("c")]

    combined = codec.combine_digests(digests, "md5")

    assert combined == codec.combine_digests(list(reversed(digests)), "md5")
    assert combined == _md5("|".join(sorted(digests)))


def test_sha256_digest_length() -> None:
    """sha256 produces 64 hex characters."""
    value = codec.digest("A|10", "sha256")

    assert value == hashlib.sha256(b"A|10").hexdigest()
    assert len(value) == 64


def test_resolve_algorithm_normalizes_case() -> None:
    assert codec.resolve_algorithm(" SHA256 ") == "sha256"


@pytest.mark.parametrize("name", ["sha1", "", "crc32"])
def test_resolve_algorithm_rejects_unsupported(name: str) -> None:
    """Unsupported algorithms are a configuration error."""
    with pytest.raises(ConfigurationError):
        codec.resolve_algorithm(name)


def test_digest_rejects_unknown_algorithm() -> None:
    with pytest.raises(ConfigurationError):
        codec.digest("x", "sha1")
