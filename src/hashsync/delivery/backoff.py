"""Backoff table lookups for deferred deliveries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping

from hashsync.config import settings
from hashsync.errors import ConfigurationError


@dataclass(frozen=True)
class BackoffTable:
    """Ordered delays, in seconds, keyed by attempt number starting at 1."""

    delays: tuple[int, ...]

    @staticmethod
    def from_settings() -> "BackoffTable":
        """Build the table from delivery settings."""
        return BackoffTable.from_mapping(settings.delivery.retry_intervals)

    @staticmethod
    def from_mapping(intervals: Mapping[int, int] | None) -> "BackoffTable":
        """Validate an ``attempt -> delay`` mapping and build the table."""
        if not intervals:
            raise ConfigurationError("Backoff table must define at least one retry interval.")
        try:
            normalized = {int(key): int(value) for key, value in intervals.items()}
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Backoff table entries must be integers: {exc}") from exc
        keys = sorted(normalized)
        if keys != list(range(1, len(keys) + 1)):
            raise ConfigurationError("Backoff table attempts must be numbered 1..n without gaps.")
        if any(delay < 0 for delay in normalized.values()):
            raise ConfigurationError("Backoff table delays must be >= 0.")
        return BackoffTable(tuple(normalized[key] for key in keys))

    def __len__(self) -> int:
        return len(self.delays)

    def delay_for(self, attempt: int) -> int:
        """Return the delay after the given failed attempt."""
        if attempt < 1 or attempt > len(self.delays):
            raise ValueError(f"attempt must be between 1 and {len(self.delays)}.")
        return self.delays[attempt - 1]

    def next_try_at(self, now: datetime, attempt: int) -> datetime:
        """Compute when a record deferred after ``attempt`` becomes due."""
        return now + timedelta(seconds=self.delay_for(attempt))
