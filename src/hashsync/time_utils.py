"""UTC time helpers for stored timestamps."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Ensure a datetime is timezone-aware, defaulting to UTC if naive."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_optional_aware(value: datetime | None) -> datetime | None:
    """Coerce an optional datetime to aware UTC."""
    if value is None:
        return None
    return ensure_aware(value)
