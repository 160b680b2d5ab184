"""Error taxonomy for hash tracking, propagation and delivery."""

from __future__ import annotations


class HashSyncError(Exception):
    """Base class for all hashsync errors."""


class ConfigurationError(HashSyncError, ValueError):
    """Raised when configuration is invalid; callers should fail fast."""


class RelationResolutionError(HashSyncError, LookupError):
    """Raised by providers when a declared relation cannot be resolved."""

    def __init__(self, entity_type: str, entity_id: str, relation: str, reason: str) -> None:
        """Initialize the error with the failing relation hop."""
        super().__init__(
            f"cannot resolve relation {relation!r} on {entity_type}:{entity_id}: {reason}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.relation = relation


class DeliveryError(HashSyncError):
    """Raised when a delivery callback fails, times out or reports failure."""


class ExhaustedRetryError(DeliveryError):
    """Terminal delivery failure once the attempt budget is spent."""

    def __init__(self, delivery_id: int, attempts: int, last_error: str) -> None:
        """Initialize the error with the delivery attempt bookkeeping."""
        super().__init__(
            f"delivery {delivery_id} exhausted after {attempts} attempts: {last_error}"
        )
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.last_error = last_error


class ConcurrencyConflict(HashSyncError):
    """Raised when a hash record write loses an optimistic concurrency race."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        """Initialize the error with the contested entity identity."""
        super().__init__(f"concurrent hash write for {entity_type}:{entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class UnknownEntityType(HashSyncError, KeyError):
    """Raised when no entity provider is registered for a type."""

    def __init__(self, entity_type: str) -> None:
        """Initialize the error with the unregistered entity type."""
        super().__init__(f"no entity provider registered for type: {entity_type}")
        self.entity_type = entity_type


class SubscriberNotFound(HashSyncError, KeyError):
    """Raised when a subscriber cannot be located."""

    def __init__(self, subscriber: str | int) -> None:
        """Initialize the error with the missing subscriber name or id."""
        super().__init__(f"subscriber not found: {subscriber}")
        self.subscriber = subscriber


class SubscriberInUse(HashSyncError):
    """Raised when deleting a subscriber that still has in-flight deliveries."""

    def __init__(self, name: str, in_flight: int) -> None:
        """Initialize the error with the blocking delivery count."""
        super().__init__(
            f"subscriber {name!r} has {in_flight} pending or dispatched deliveries"
        )
        self.name = name
        self.in_flight = in_flight


class DeliveryNotFound(HashSyncError, KeyError):
    """Raised when a delivery record cannot be located."""

    def __init__(self, delivery_id: int) -> None:
        """Initialize the error with the missing delivery identifier."""
        super().__init__(f"delivery not found: {delivery_id}")
        self.delivery_id = delivery_id
