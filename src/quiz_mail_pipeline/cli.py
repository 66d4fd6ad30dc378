"""Command-line interface for the quiz mail pipeline.

This module lets an operator run the pipeline jobs, inspect the queue and
the audit log, and manage provider settings directly from the command line
without going through the HTTP API.

Usage:
    quiz-mail init-db
    quiz-mail process-queue
    quiz-mail process-pending
    quiz-mail reconcile
    quiz-mail serve --port 8000
    quiz-mail stats
    quiz-mail logs --status failed
    quiz-mail queue --status pending
    quiz-mail resend <log_id> --to someone@example.com
    quiz-mail settings set smtp_host smtp.example.com

Every command accepts ``--config`` pointing to an INI file; ``QMP_*``
environment variables are honoured as well.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from quiz_mail_pipeline import __version__
from quiz_mail_pipeline.config_loader import Settings, load_settings
from quiz_mail_pipeline.core import MailPipeline
from quiz_mail_pipeline.exceptions import PipelineError
from quiz_mail_pipeline.logger import configure_logging
from quiz_mail_pipeline.models import LogStatus

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(int(value)).strftime("%Y-%m-%d %H:%M:%S")


def _status_markup(value: str) -> str:
    colour = {
        "sent": "green", "failed": "red", "processing": "yellow", "pending": "blue", "queued": "blue"
    }.get(value)
    return f"[{colour}]{value}[/{colour}]" if colour else value


def _with_pipeline(settings: Settings, action):
    """Open a pipeline on ``settings``, run ``action`` on it and close the database."""

    async def _run():
        pipeline = MailPipeline(settings)
        await pipeline.init()
        try:
            return await action(pipeline)
        finally:
            await pipeline.db.close()

    return run_async(_run())


def _run_job(ctx: click.Context, label: str, job_name: str, as_json: bool) -> None:
    settings: Settings = ctx.obj["settings"]
    try:
        summary = _with_pipeline(settings, lambda p: getattr(p, job_name)())
    except PipelineError as exc:
        print_error(str(exc))
        raise SystemExit(1)

    if as_json:
        print_json(summary)
        return
    console.print(f"\n[bold]{label}[/bold]\n")
    for key, value in summary.items():
        console.print(f"  {key:<15} {value}")
    console.print()


@click.group()
@click.version_option(__version__)
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), envvar="QMP_CONFIG",
              help="Path to the INI configuration file.")
@click.option("--db", "db_path", help="Database path or connection string (overrides the config).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """quiz-mail - Deliver quiz result emails.

    Examples:

        quiz-mail process-queue          # Deliver due messages once

        quiz-mail logs --status failed   # Show failed deliveries
    """
    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError) as exc:
        print_error(str(exc))
        raise SystemExit(1)
    if db_path:
        settings.db_path = db_path
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ============================================================================
# Jobs
# ============================================================================

@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the pipeline tables if they do not exist."""
    settings: Settings = ctx.obj["settings"]

    async def _noop(pipeline: MailPipeline) -> None:
        return None

    _with_pipeline(settings, _noop)
    print_success(f"Database ready at {settings.db_path}")


@main.command("process-queue")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def process_queue(ctx: click.Context, as_json: bool) -> None:
    """Deliver one batch of due messages."""
    _run_job(ctx, "Delivery worker", "process_email_queue", as_json)


@main.command("process-pending")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def process_pending(ctx: click.Context, as_json: bool) -> None:
    """Resolve one batch of pending notifications."""
    _run_job(ctx, "Pending notifications", "process_pending_emails", as_json)


@main.command("reconcile")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def reconcile(ctx: click.Context, as_json: bool) -> None:
    """File pending notifications for orphaned leads."""
    _run_job(ctx, "Orphan reconciler", "reconcile_orphans", as_json)


@main.command("serve")
@click.option("--host", default=None, help="Host to bind (defaults to the configured one).")
@click.option("--port", "-p", type=int, default=None, help="Port to bind (defaults to the configured one).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API with the internal tickers."""
    import uvicorn

    from quiz_mail_pipeline.server import build_app

    settings: Settings = ctx.obj["settings"]
    host = host or settings.http_host
    port = port or settings.http_port
    console.print(f"[bold]Serving quiz mail pipeline on http://{host}:{port}[/bold]")
    uvicorn.run(build_app(settings), host=host, port=port, log_level=settings.log_level.lower())


# ============================================================================
# Inspection
# ============================================================================

@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show row counts per status for the queue, the audit log and the notifications."""
    data = _with_pipeline(ctx.obj["settings"], lambda p: p.stats())

    if as_json:
        print_json(data)
        return

    table = Table(title="Pipeline statistics")
    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for name, counts in data.items():
        if not counts:
            table.add_row(name, "[dim]-[/dim]", "0")
        for status_name, count in sorted(counts.items()):
            table.add_row(name, _status_markup(status_name), str(count))
    console.print(table)


@main.command("logs")
@click.option("--status", "-s", "status_filter", type=click.Choice([s.value for s in LogStatus] + ["all"]),
              default="all", help="Filter by status.")
@click.option("--type", "-t", "email_type", help="Filter by email type.")
@click.option("--recipient", "-r", help="Filter by recipient (substring match).")
@click.option("--limit", "-l", type=int, default=50, help="Max entries to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs(ctx: click.Context, status_filter: str, email_type: Optional[str], recipient: Optional[str],
         limit: int, as_json: bool) -> None:
    """List audit log entries, newest first."""
    entries = _with_pipeline(
        ctx.obj["settings"],
        lambda p: p.db.email_logs.list_entries(
            status=None if status_filter == "all" else status_filter,
            email_type=email_type,
            recipient=recipient,
            limit=limit,
        ),
    )

    if as_json:
        print_json(entries)
        return

    if not entries:
        console.print("[dim]No email logs found.[/dim]")
        return

    table = Table(title=f"Email logs (showing up to {limit})")
    table.add_column("ID", style="cyan", max_width=36)
    table.add_column("Type")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Error", max_width=40)
    table.add_column("Created")
    for entry in entries:
        table.add_row(
            entry["id"],
            entry["email_type"],
            entry["recipient_email"],
            _status_markup(entry["status"]),
            entry.get("error_message") or "-",
            _format_ts(entry.get("created_at")),
        )
    console.print(table)


@main.command("queue")
@click.option("--status", "-s", "status_filter",
              type=click.Choice(["pending", "processing", "sent", "failed", "all"]), default="all",
              help="Filter by status.")
@click.option("--limit", "-l", type=int, default=50, help="Max messages to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def queue(ctx: click.Context, status_filter: str, limit: int, as_json: bool) -> None:
    """List queued messages."""
    rows = _with_pipeline(
        ctx.obj["settings"],
        lambda p: p.db.email_queue.list_messages(
            status=None if status_filter == "all" else status_filter, limit=limit
        ),
    )

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title=f"Email queue (showing up to {limit})")
    table.add_column("ID", style="cyan", max_width=36)
    table.add_column("Recipient")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Scheduled")
    for row in rows:
        table.add_row(
            row["id"],
            row["recipient_email"],
            row["email_type"],
            _status_markup(row["status"]),
            f"{row['retry_count']}/{row['max_retries']}",
            _format_ts(row.get("scheduled_for")),
        )
    console.print(table)


# ============================================================================
# Operator commands
# ============================================================================

@main.command("resend")
@click.argument("log_id")
@click.option("--to", "recipient", help="Deliver to this address instead of the original recipient.")
@click.pass_context
def resend(ctx: click.Context, log_id: str, recipient: Optional[str]) -> None:
    """Queue a copy of an audited email."""
    result = _with_pipeline(
        ctx.obj["settings"],
        lambda p: p.handle_command("resend", {"log_id": log_id, "recipient_email": recipient}),
    )
    if not result.get("ok"):
        print_error(result.get("error") or "resend failed")
        raise SystemExit(1)
    print_success(f"Queued message {result['id']}")


@main.command("cleanup")
@click.option("--older-than", type=int, default=None,
              help="Remove delivered messages older than this many seconds.")
@click.pass_context
def cleanup(ctx: click.Context, older_than: Optional[int]) -> None:
    """Remove delivered messages from the queue."""
    removed = _with_pipeline(ctx.obj["settings"], lambda p: p.cleanup(older_than))
    print_success(f"Removed {removed} delivered message(s)")


@main.group("settings", invoke_without_command=True)
@click.pass_context
def settings_group(ctx: click.Context) -> None:
    """Manage stored provider settings."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@settings_group.command("list")
@click.option("--reveal", is_flag=True, help="Show secret values in clear.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def settings_list(ctx: click.Context, reveal: bool, as_json: bool) -> None:
    """List stored settings."""
    values = _with_pipeline(ctx.obj["settings"], lambda p: p.list_settings(reveal_secrets=reveal))

    if as_json:
        print_json(values)
        return

    if not values:
        console.print("[dim]No settings stored.[/dim]")
        return

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in sorted(values.items()):
        table.add_row(key, value if value is not None else "[dim]-[/dim]")
    console.print(table)


@settings_group.command("get")
@click.argument("key")
@click.pass_context
def settings_get(ctx: click.Context, key: str) -> None:
    """Print one stored setting."""
    value = _with_pipeline(ctx.obj["settings"], lambda p: p.db.app_settings.get(key))
    if value is None:
        print_error(f"Setting '{key}' not set")
        raise SystemExit(1)
    click.echo(value)


@settings_group.command("set")
@click.argument("key")
@click.argument("value", required=False)
@click.pass_context
def settings_set(ctx: click.Context, key: str, value: Optional[str]) -> None:
    """Store a setting (omit VALUE to clear it)."""
    _with_pipeline(ctx.obj["settings"], lambda p: p.handle_command("setSetting", {"key": key, "value": value}))
    print_success(f"Setting '{key}' updated")


if __name__ == "__main__":
    main()
