"""Unit tests for structured logging helpers."""

import json
import logging

from hashsync.logging import bind_context, clear_context, configure_logging, log_context
from hashsync.logging.config import ContextFilter, JsonFormatter, PlainFormatter
from hashsync.logging.context import current_context


def _record(message: str) -> logging.LogRecord:
    record = logging.LogRecord("hashsync.test", logging.INFO, __file__, 1, message, None, None)
    ContextFilter().filter(record)
    return record


def test_log_context_restores_previous_values() -> None:
    """Nested contexts bind fields only for the duration of the block."""
    clear_context()
    bind_context(service="worker")

    with log_context({"propagation_run": "abc", "skipped": None}):
        assert current_context() == {"service": "worker", "propagation_run": "abc"}

    assert current_context() == {"service": "worker"}
    clear_context()
    assert current_context() == {}


def test_json_formatter_includes_context() -> None:
    clear_context()
    with log_context({"delivery_id": 7, "subscriber": "feed"}):
        payload = json.loads(JsonFormatter().format(_record("dispatched")))

    assert payload["message"] == "dispatched"
    assert payload["level"] == "INFO"
    assert payload["delivery_id"] == "7"
    assert payload["subscriber"] == "feed"


def test_plain_formatter_appends_sorted_context() -> None:
    clear_context()
    with log_context({"entity_type": "product", "drift_pass": "p1"}):
        line = PlainFormatter().format(_record("scan"))

    assert line.endswith("scan drift_pass=p1 entity_type=product")


def test_configure_logging_rebinds_service_and_quiets_libraries() -> None:
    """Reconfiguring replaces the service field and keeps one root handler."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    bind_context(propagation_run="stale")

    try:
        configure_logging(level="info", json_output=False, service="hashsync-cli")
        configure_logging(level="info", json_output=True, service="hashsync-worker")

        assert current_context() == {"service": "hashsync-worker"}
        assert len(root.handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        clear_context()
