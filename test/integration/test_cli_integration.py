"""Integration tests for the hashsync Typer CLI."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from hashsync import cli
from hashsync.errors import ConfigurationError
from helpers.app import add_product, bound


@pytest.fixture
def runner(runtime, monkeypatch) -> CliRunner:
    monkeypatch.setattr(cli, "get_runtime", lambda: runtime)
    monkeypatch.setattr(cli, "configure_logging", lambda **_: None)
    return CliRunner()


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(cli.app, list(args))


def test_subscriber_lifecycle(runner) -> None:
    """Subscribers can be created, listed, deactivated and deleted."""
    created = _invoke(runner, "subscribers", "create", "feed", "--type", "product")
    assert created.exit_code == 0
    assert "Created subscriber feed (active)" in created.stdout

    listed = _invoke(runner, "--json", "subscribers", "list")
    assert listed.exit_code == 0
    payload = json.loads(listed.stdout)
    assert [item["name"] for item in payload] == ["feed"]
    assert payload[0]["callback"] == "log"

    deactivated = _invoke(runner, "subscribers", "deactivate", "feed")
    assert "feed is now inactive" in deactivated.stdout

    deleted = _invoke(runner, "subscribers", "delete", "feed")
    assert deleted.exit_code == 0
    assert "Deleted subscriber feed" in deleted.stdout


def test_subscriber_errors_map_to_exit_codes(runner) -> None:
    """Domain and configuration errors exit with distinct codes."""
    missing = _invoke(runner, "subscribers", "activate", "ghost")
    assert missing.exit_code == cli.DOMAIN_ERROR_EXIT_CODE

    bad_json = _invoke(runner, "subscribers", "create", "feed", "--type", "product", "--config", "{nope")
    assert bad_json.exit_code == cli.DOMAIN_ERROR_EXIT_CODE

    not_object = _invoke(runner, "subscribers", "create", "feed", "--type", "product", "--config", "[1]")
    assert not_object.exit_code == cli.DOMAIN_ERROR_EXIT_CODE

    unknown_callback = _invoke(
        runner, "subscribers", "create", "feed", "--type", "product", "--callback", "fax"
    )
    assert unknown_callback.exit_code == cli.CONFIGURATION_ERROR_EXIT_CODE


def test_detect_changes_reports_per_type(runner, sqlite_session_factory) -> None:
    """detect-changes emits one JSON report per scanned type."""
    add_product(sqlite_session_factory)

    result = _invoke(runner, "--json", "detect-changes", "--type", "product")

    assert result.exit_code == 0
    reports = json.loads(result.stdout)
    assert reports[0]["entity_type"] == "product"
    assert reports[0]["created"] == 1


def test_initialize_hashes_renders_summary(runner, sqlite_session_factory) -> None:
    """initialize-hashes prints the counts for the type."""
    add_product(sqlite_session_factory, "a")
    add_product(sqlite_session_factory, "b")

    result = _invoke(runner, "initialize-hashes", "product", "--chunk", "1")

    assert result.exit_code == 0
    assert "product: scanned=2 created=2" in result.stdout


def test_deliveries_list_retry_and_reset(runner, runtime, sqlite_session_factory) -> None:
    """Pending deliveries are listed, retried and reset through the CLI."""
    runtime.subscribers.register("feed", "product", "log")
    product_id = add_product(sqlite_session_factory)
    runtime.propagation.entity_created(bound(runtime, "product", product_id))

    pending = _invoke(runner, "--json", "deliveries", "list", "--status", "pending")
    assert pending.exit_code == 0
    items = json.loads(pending.stdout)
    assert len(items) == 1
    assert items[0]["subscriber"] == "feed"

    retried = _invoke(runner, "--json", "retry-deliveries")
    assert retried.exit_code == 0
    assert json.loads(retried.stdout)["published"] == 1

    reset_all = _invoke(runner, "deliveries", "reset", "--all-failed")
    assert reset_all.exit_code == 0
    assert "Reset 0 failed deliveries" in reset_all.stdout


def test_deliveries_argument_validation(runner) -> None:
    """Invalid delivery arguments exit with the domain error code."""
    assert _invoke(runner, "deliveries", "list", "--status", "lost").exit_code == (
        cli.DOMAIN_ERROR_EXIT_CODE
    )
    assert _invoke(runner, "deliveries", "reset").exit_code == cli.DOMAIN_ERROR_EXIT_CODE
    assert _invoke(runner, "deliveries", "reset", "5", "--all-failed").exit_code == (
        cli.DOMAIN_ERROR_EXIT_CODE
    )
    assert _invoke(runner, "deliveries", "reset", "999").exit_code == cli.DOMAIN_ERROR_EXIT_CODE


def test_configuration_errors_exit_with_dedicated_code(runner, monkeypatch) -> None:
    def broken():
        raise ConfigurationError("no backoff table")

    monkeypatch.setattr(cli, "get_runtime", broken)

    result = _invoke(runner, "--json", "subscribers", "list")

    assert result.exit_code == cli.CONFIGURATION_ERROR_EXIT_CODE
