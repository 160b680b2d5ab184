"""Wiring of the hash engine, propagation, drift detection and delivery."""

from __future__ import annotations

import importlib
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from hashsync.config import settings
from hashsync.delivery.backoff import BackoffTable
from hashsync.delivery.callbacks import CallbackRegistry, default_callbacks
from hashsync.delivery.dispatcher import DeliveryDispatcher, Submitter
from hashsync.delivery.registry import SubscriberRegistry
from hashsync.drift import DriftDetector
from hashsync.entities import ProviderRegistry, default_registry
from hashsync.hashing.engine import CompositeHashEngine
from hashsync.propagation import PropagationEngine
from hashsync.services.database import get_session

logger = logging.getLogger(__name__)


@dataclass
class HashSync:
    """The assembled components sharing one session factory."""

    providers: ProviderRegistry
    engine: CompositeHashEngine
    propagation: PropagationEngine
    subscribers: SubscriberRegistry
    dispatcher: DeliveryDispatcher
    drift: DriftDetector

    def close(self) -> None:
        self.dispatcher.close()


def import_registration_modules(modules: Iterable[str]) -> tuple[str, ...]:
    """Import modules that register entity providers and delivery callbacks."""
    imported: list[str] = []
    for module in modules:
        importlib.import_module(module)
        imported.append(module)
    if imported:
        logger.info("Imported registration modules: %s", ", ".join(imported))
    return tuple(imported)


def build_runtime(
    session_factory: Callable[[], Session] | None = None,
    *,
    providers: ProviderRegistry | None = None,
    callbacks: CallbackRegistry | None = None,
    registration_modules: Iterable[str] | None = None,
    submitter: Submitter | None = None,
) -> HashSync:
    """Build and connect every component.

    Configuration problems (digest algorithm, backoff table, depth bound)
    raise ConfigurationError here rather than on first use.
    """
    import_registration_modules(
        settings.registration_modules if registration_modules is None else registration_modules
    )
    factory = session_factory or get_session
    providers = providers or default_registry()
    callbacks = callbacks or default_callbacks()

    engine = CompositeHashEngine(factory, providers, algorithm=settings.hashing.algorithm)
    propagation = PropagationEngine(engine, factory)
    subscribers = SubscriberRegistry(factory, callbacks)
    dispatcher = DeliveryDispatcher(
        factory,
        subscribers,
        providers,
        backoff=BackoffTable.from_settings(),
    )
    dispatcher.set_submitter(submitter)
    engine.add_change_listener(dispatcher)
    propagation.add_deletion_listener(dispatcher)
    drift = DriftDetector(engine, propagation, factory)
    return HashSync(
        providers=providers,
        engine=engine,
        propagation=propagation,
        subscribers=subscribers,
        dispatcher=dispatcher,
        drift=drift,
    )


_RUNTIME: HashSync | None = None
_RUNTIME_LOCK = threading.Lock()


def get_runtime() -> HashSync:
    """Return the process-wide runtime, building it on first use."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = build_runtime()
        return _RUNTIME


def set_runtime(runtime: HashSync | None) -> None:
    """Replace the process-wide runtime (workers install one with a submitter)."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is not None and _RUNTIME is not runtime:
            _RUNTIME.close()
        _RUNTIME = runtime
