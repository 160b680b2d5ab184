"""Delivery callbacks: the per-subscriber sinks that receive changes.

Subscribers name their callback; the name is looked up in a
:class:`CallbackRegistry` populated by registration modules. Two sinks ship
built in: ``log`` and ``http``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

import httpx

from hashsync.config import settings
from hashsync.entities import BoundEntity, ProviderRegistry, default_registry
from hashsync.errors import ConfigurationError

logger = logging.getLogger(__name__)


@runtime_checkable
class DeliveryCallback(Protocol):
    """Receives changed entities."""

    def should_deliver(self, entity: BoundEntity) -> bool:
        ...

    def build_payload(self, entity: BoundEntity) -> Any:
        ...

    def deliver(self, entity: BoundEntity, payload: Any) -> bool:
        ...

    def max_attempts(self) -> int:
        ...


@runtime_checkable
class DeletionCallback(Protocol):
    """Receives deletion notices for entities that no longer exist."""

    def should_deliver_deletion(self, entity_type: str, entity_id: str) -> bool:
        ...

    def deliver_deletion(
        self,
        entity_type: str,
        entity_id: str,
        last_known: Mapping[str, Any],
    ) -> bool:
        ...

    def max_attempts(self) -> int:
        ...


class BaseDeliveryCallback:
    """Defaults shared by change callbacks."""

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        """Initialize the callback with subscriber config and provider lookup."""
        self.config = dict(config or {})
        self._providers = providers or default_registry()

    def should_deliver(self, entity: BoundEntity) -> bool:
        return True

    def build_payload(self, entity: BoundEntity) -> dict[str, Any]:
        """Return the tracked attributes plus identifying metadata."""
        provider = self._providers.get(entity.ref.entity_type)
        return {
            "entity": dict(provider.tracked_attributes(entity.entity)),
            "meta": {
                "entity_type": entity.ref.entity_type,
                "entity_id": entity.ref.entity_id,
            },
        }

    def deliver(self, entity: BoundEntity, payload: Any) -> bool:
        raise NotImplementedError

    def max_attempts(self) -> int:
        configured = self.config.get("max_attempts")
        if configured is not None:
            return int(configured)
        return len(settings.delivery.retry_intervals)


class LogCallback(BaseDeliveryCallback):
    """Write changes and deletion notices to the application log."""

    def deliver(self, entity: BoundEntity, payload: Any) -> bool:
        logger.info(
            "Entity changed %s: %s",
            entity.ref,
            json.dumps(payload, default=str, sort_keys=True),
        )
        return True

    def should_deliver_deletion(self, entity_type: str, entity_id: str) -> bool:
        return True

    def deliver_deletion(
        self,
        entity_type: str,
        entity_id: str,
        last_known: Mapping[str, Any],
    ) -> bool:
        logger.info(
            "Entity deleted %s:%s (last known %s)",
            entity_type,
            entity_id,
            json.dumps(dict(last_known), default=str, sort_keys=True),
        )
        return True

    def max_attempts(self) -> int:
        return 1


class HttpCallback(BaseDeliveryCallback):
    """POST changes and DELETE removed entities against an HTTP endpoint.

    Subscriber config keys: ``url`` (absolute, or relative to ``http.base_url``),
    ``headers``, ``timeout_seconds`` and ``max_attempts``. A 2xx response is a
    success; anything else, including transport errors, is a failure.
    """

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        providers: ProviderRegistry | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the sink, requiring a target URL."""
        super().__init__(config, providers)
        http_config = settings.http
        self._base_url = str(self.config.get("base_url", http_config.base_url) or "")
        self._url = str(self.config.get("url", "") or "")
        if not self._url and not self._base_url:
            raise ConfigurationError("http callback requires a url or http.base_url")
        self._headers = {**http_config.headers, **dict(self.config.get("headers") or {})}
        self._timeout = float(self.config.get("timeout_seconds", http_config.timeout_seconds))
        self._max_attempts = int(self.config.get("max_attempts", http_config.max_attempts))
        self._transport = transport

    def deliver(self, entity: BoundEntity, payload: Any) -> bool:
        response = self._request(
            "POST",
            self._url,
            content=json.dumps(payload, default=str),
            headers={"Content-Type": "application/json"},
        )
        return _is_success(response)

    def should_deliver_deletion(self, entity_type: str, entity_id: str) -> bool:
        return True

    def deliver_deletion(
        self,
        entity_type: str,
        entity_id: str,
        last_known: Mapping[str, Any],
    ) -> bool:
        url = f"{self._url.rstrip('/')}/{entity_id}" if self._url else str(entity_id)
        response = self._request("DELETE", url)
        return _is_success(response)

    def max_attempts(self) -> int:
        return self._max_attempts

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        with httpx.Client(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = client.request(method, url, **kwargs)
        if not _is_success(response):
            logger.warning(
                "HTTP %s %s returned %s",
                method,
                response.request.url,
                response.status_code,
            )
        return response


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


CallbackFactory = Callable[[Mapping[str, Any], ProviderRegistry], Any]


class CallbackRegistry:
    """Named callback factories, instantiated per subscriber config."""

    def __init__(self, providers: ProviderRegistry | None = None) -> None:
        """Initialize the registry with the built-in sinks."""
        self._providers = providers or default_registry()
        self._factories: dict[str, CallbackFactory] = {}
        self.register("log", LogCallback)
        self.register("http", HttpCallback)

    def register(self, name: str, factory: CallbackFactory) -> None:
        self._factories[name] = factory

    def has(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        return sorted(self._factories)

    def create(self, name: str, config: Mapping[str, Any] | None = None) -> Any:
        """Instantiate a callback, raising ConfigurationError for unknown names."""
        factory = self._factories.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown delivery callback: {name}")
        return factory(dict(config or {}), self._providers)


_DEFAULT_CALLBACKS: CallbackRegistry | None = None


def default_callbacks() -> CallbackRegistry:
    """Return the process-wide callback registry."""
    global _DEFAULT_CALLBACKS
    if _DEFAULT_CALLBACKS is None:
        _DEFAULT_CALLBACKS = CallbackRegistry()
    return _DEFAULT_CALLBACKS


def register_callback(name: str, factory: CallbackFactory) -> CallbackFactory:
    """Register a callback factory in the process-wide registry."""
    default_callbacks().register(name, factory)
    return factory
