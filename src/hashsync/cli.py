"""Operator CLI for hashsync implemented with Typer."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

import typer

from hashsync.config import settings
from hashsync.delivery.state_machine import DEFERRED, DISPATCHED, FAILED, PENDING, PUBLISHED
from hashsync.errors import ConfigurationError, HashSyncError
from hashsync.logging import configure_logging
from hashsync.runtime import HashSync, get_runtime
from hashsync.services.database import init_db

SUCCESS_EXIT_CODE = 0
DOMAIN_ERROR_EXIT_CODE = 3
CONFIGURATION_ERROR_EXIT_CODE = 4

_STATUSES = (PENDING, DISPATCHED, PUBLISHED, DEFERRED, FAILED)


@dataclass(frozen=True)
class CliConfig:
    """Global CLI options shared by every command."""

    as_json: bool


def _serialize(value: Any) -> Any:
    """Convert result objects to JSON-serializable structures."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "as_dict"):
        return _serialize(value.as_dict())
    if dataclasses.is_dataclass(value):
        return _serialize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(key): _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize(item) for item in value]
    return str(value)


def _emit_output(result: Any, as_json: bool, render: Callable[[Any], str] | None = None) -> None:
    """Render command output in the requested format."""
    data = _serialize(result)
    if as_json:
        typer.echo(json.dumps(data, sort_keys=True, separators=(",", ":")))
        return
    if render is not None:
        typer.echo(render(data))
        return
    if data is None:
        typer.echo("ok")
        return
    if isinstance(data, (dict, list)):
        typer.echo(json.dumps(data, indent=2, sort_keys=True))
        return
    typer.echo(str(data))


def _emit_error(exc: Exception, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps({"error": str(exc)}), err=True)
        return
    typer.echo(f"error: {exc}", err=True)


def _run_command(
    cfg: CliConfig,
    invoke: Callable[[HashSync], Any],
    render: Callable[[Any], str] | None = None,
) -> None:
    """Run one command against the runtime and map errors to exit codes."""
    try:
        result = invoke(get_runtime())
    except ConfigurationError as exc:
        _emit_error(exc, cfg.as_json)
        raise typer.Exit(code=CONFIGURATION_ERROR_EXIT_CODE) from exc
    except (HashSyncError, ValueError) as exc:
        _emit_error(exc, cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE) from exc

    _emit_output(result, cfg.as_json, render)
    raise typer.Exit(code=SUCCESS_EXIT_CODE)


def _require_config(ctx: typer.Context) -> CliConfig:
    config = ctx.obj
    if not isinstance(config, CliConfig):
        raise RuntimeError("CLI configuration not initialized")
    return config


def _render_reports(reports: list[dict[str, Any]]) -> str:
    if not reports:
        return "No tracked entity types."
    lines = []
    for report in reports:
        line = (
            f"{report['entity_type']}: scanned={report['scanned']} created={report['created']} "
            f"updated={report['updated']} deleted={report['deleted']} errors={report['errors']}"
        )
        if report.get("cancelled"):
            line = f"{line} (cancelled)"
        lines.append(line)
    return "\n".join(lines)


def _render_deliveries(items: list[dict[str, Any]]) -> str:
    if not items:
        return "No deliveries found."
    lines = []
    for item in items:
        target = f"{item['entity_type']}:{item['entity_id']}"
        kind = " deletion" if item["is_deletion"] else ""
        line = (
            f"#{item['id']} {item['status']}{kind} {target} -> {item['subscriber']} "
            f"(attempts={item['attempts']})"
        )
        if item.get("last_error"):
            line = f"{line} last_error={item['last_error']}"
        lines.append(line)
    return "\n".join(lines)


def _render_subscribers(items: list[dict[str, Any]]) -> str:
    if not items:
        return "No subscribers."
    return "\n".join(
        f"{item['name']} [{item['status']}] {item['target_entity_type']} via {item['callback']}"
        for item in items
    )


app = typer.Typer(no_args_is_help=True, help="Hash-based change detection and delivery")
deliveries_app = typer.Typer(help="Inspect and reset deliveries")
subscribers_app = typer.Typer(help="Manage subscribers")


@app.callback()
def main(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
    log_level: str = typer.Option(settings.log_level, help="Log level"),
) -> None:
    """Store global options for all commands."""
    configure_logging(level=log_level, json_output=settings.log_json, service="hashsync-cli")
    ctx.obj = CliConfig(as_json=as_json)


@app.command("migrate")
def migrate_command(ctx: typer.Context) -> None:
    """Apply database migrations up to head."""
    cfg = _require_config(ctx)
    init_db()
    _emit_output(None, cfg.as_json)


@app.command("detect-changes")
def detect_changes_command(
    ctx: typer.Context,
    entity_type: Optional[str] = typer.Option(None, "--type", help="Only scan this entity type"),
) -> None:
    """Find hashes that drifted from the stored rows and propagate them."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.drift.run(entity_type),
        _render_reports,
    )


@app.command("initialize-hashes")
def initialize_hashes_command(
    ctx: typer.Context,
    entity_type: str = typer.Argument(..., help="Entity type to initialize"),
    chunk: int = typer.Option(settings.drift.chunk_size, "--chunk", min=1, help="Rows per chunk"),
) -> None:
    """Create hash records for entities that have none yet."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: [runtime.drift.initialize_hashes(entity_type, chunk)],
        _render_reports,
    )


@app.command("retry-deliveries")
def retry_deliveries_command(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum records to dispatch"),
) -> None:
    """Dispatch pending deliveries and deferred ones whose retry time has come."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.dispatcher.run_due(limit),
        lambda counts: ", ".join(f"{key}={value}" for key, value in sorted(counts.items()))
        or "Nothing due.",
    )


@deliveries_app.command("list")
def deliveries_list_command(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, help=f"One of: {', '.join(_STATUSES)}"),
    subscriber: Optional[str] = typer.Option(None, help="Subscriber name"),
    limit: int = typer.Option(100, min=1, help="Maximum rows"),
) -> None:
    """List deliveries with attempts and last error."""
    cfg = _require_config(ctx)
    if status is not None and status not in _STATUSES:
        _emit_error(ValueError(f"unknown status: {status}"), cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE)
    _run_command(
        cfg,
        lambda runtime: runtime.dispatcher.list_by_status(
            status, subscriber_name=subscriber, limit=limit
        ),
        _render_deliveries,
    )


@deliveries_app.command("reset")
def deliveries_reset_command(
    ctx: typer.Context,
    delivery_id: Optional[int] = typer.Argument(None, help="Delivery id to reset"),
    all_failed: bool = typer.Option(False, "--all-failed", help="Reset every failed delivery"),
    subscriber: Optional[str] = typer.Option(None, help="Limit --all-failed to one subscriber"),
) -> None:
    """Reset failed deliveries so they are retried."""
    cfg = _require_config(ctx)
    if (delivery_id is None) == (not all_failed):
        _emit_error(ValueError("pass either a delivery id or --all-failed"), cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE)
    if delivery_id is not None:
        _run_command(
            cfg,
            lambda runtime: runtime.dispatcher.reset(delivery_id),
            lambda item: f"Reset delivery #{item['id']} ({item['status']})",
        )
    _run_command(
        cfg,
        lambda runtime: {"reset": runtime.dispatcher.reset_failed(subscriber)},
        lambda data: f"Reset {data['reset']} failed deliveries",
    )


@subscribers_app.command("create")
def subscribers_create_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique subscriber name"),
    entity_type: str = typer.Option(..., "--type", help="Entity type to follow"),
    callback: str = typer.Option("log", help="Registered callback name"),
    config: Optional[str] = typer.Option(None, help="Callback config as a JSON object"),
    inactive: bool = typer.Option(False, "--inactive", help="Create in inactive state"),
) -> None:
    """Register a subscriber."""
    cfg = _require_config(ctx)
    try:
        parsed = json.loads(config) if config else {}
    except json.JSONDecodeError as exc:
        _emit_error(ValueError(f"--config is not valid JSON: {exc}"), cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE) from exc
    if not isinstance(parsed, dict):
        _emit_error(ValueError("--config must be a JSON object"), cfg.as_json)
        raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE)
    _run_command(
        cfg,
        lambda runtime: runtime.subscribers.register(
            name,
            entity_type,
            callback,
            config=parsed,
            active=not inactive,
        ),
        lambda item: f"Created subscriber {item['name']} ({item['status']})",
    )


@subscribers_app.command("list")
def subscribers_list_command(
    ctx: typer.Context,
    entity_type: Optional[str] = typer.Option(None, "--type", help="Filter by entity type"),
) -> None:
    """List subscribers."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.subscribers.list_subscribers(entity_type),
        _render_subscribers,
    )


@subscribers_app.command("activate")
def subscribers_activate_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Subscriber name"),
) -> None:
    """Activate a subscriber."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.subscribers.activate(name),
        lambda item: f"{item['name']} is now {item['status']}",
    )


@subscribers_app.command("deactivate")
def subscribers_deactivate_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Subscriber name"),
) -> None:
    """Deactivate a subscriber."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.subscribers.deactivate(name),
        lambda item: f"{item['name']} is now {item['status']}",
    )


@subscribers_app.command("delete")
def subscribers_delete_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Subscriber name"),
) -> None:
    """Delete a subscriber that has no pending or dispatched deliveries."""
    cfg = _require_config(ctx)
    _run_command(
        cfg,
        lambda runtime: runtime.subscribers.delete(name),
        lambda _data: f"Deleted subscriber {name}",
    )


app.add_typer(deliveries_app, name="deliveries")
app.add_typer(subscribers_app, name="subscribers")


if __name__ == "__main__":
    app()
