"""
Main application entry point for signalrelay.

Provides CLI interface for the consumer loop and operator tooling.
"""

import json
import sys
from datetime import timedelta
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from signalrelay.core.config import (
    get_settings,
    print_configuration_summary,
    validate_required_settings,
)
from signalrelay.core.exceptions import ConfigurationError, SignalRelayError
from signalrelay.core.logging import set_correlation_id, setup_logging
from signalrelay.core.models import (
    Category,
    ItemKind,
    OutcomeStatus,
    TickResult,
    WorkItemStatus,
    utcnow,
)
from signalrelay.services.consumer import create_consumer, open_stores
from signalrelay.services.formatter import MessageFormatter
from signalrelay.services.producer import enqueue_news, enqueue_signal

console = Console()

STATUS_STYLES = {
    OutcomeStatus.SENT.value: "green",
    OutcomeStatus.DEFERRED.value: "yellow",
    OutcomeStatus.SKIPPED.value: "dim",
    OutcomeStatus.ERROR.value: "red",
}


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines instead of rich output")
@click.option("--correlation-id", help="Set correlation ID for request tracing")
@click.pass_context
def main(ctx, debug: bool, json_logs: bool, correlation_id: Optional[str]):
    """Publish trading signals and news to Telegram from a shared queue.

    Any number of consumers may run against the same database; each item is
    sent at most once and every tier respects its publish window.
    """
    ctx.ensure_object(dict)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(1)
    setup_logging(debug=debug or settings.debug, rich_output=not (json_logs or settings.json_logs))

    if correlation_id:
        set_correlation_id(correlation_id)

    ctx.obj["debug"] = debug
    ctx.obj["correlation_id"] = correlation_id


def _fail(ctx, label: str, error: Exception) -> None:
    console.print(f"[red]{label}:[/red] {error}")
    if ctx.obj and ctx.obj.get("debug"):
        import traceback

        console.print(traceback.format_exc())
    sys.exit(1)


def _check_settings(workflow: str) -> None:
    missing = validate_required_settings(workflow)
    if missing:
        console.print("[red]Configuration Error:[/red]")
        for item in missing:
            console.print(f"  • Missing: {item}")
        sys.exit(1)


def _display_tick_result(result: TickResult) -> None:
    """Display the per-item outcomes of one tick."""
    if result.ok:
        console.print(f"[green]✅ Tick completed[/green] ({result.correlation_id})")
    else:
        console.print(f"[red]❌ Tick failed:[/red] {result.error_message}")

    table = Table(title="Tick Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Processed", str(len(result.outcomes)))
    for status in OutcomeStatus:
        table.add_row(status.value.title(), str(result.count(status)))
    table.add_row("Duration", f"{result.duration_seconds or 0:.2f}s")
    console.print(table)

    if not result.outcomes:
        return

    items = Table(title="Items")
    items.add_column("ID", style="cyan")
    items.add_column("Kind")
    items.add_column("Category")
    items.add_column("Outcome")
    items.add_column("Details", style="dim")
    for outcome in result.outcomes:
        style = STATUS_STYLES.get(outcome.status, "white")
        details = outcome.reason or ""
        if outcome.message_id is not None:
            details = f"message {outcome.message_id} → {outcome.channel}"
        if outcome.error:
            details = f"{details} {outcome.error[:60]}".strip()
        items.add_row(
            str(outcome.item_id),
            outcome.kind,
            outcome.category or "",
            f"[{style}]{outcome.status}[/{style}]",
            details,
        )
    console.print(items)


@main.command()
@click.option("--max-ticks", type=int, help="Stop after this many ticks")
@click.pass_context
def run(ctx, max_ticks: Optional[int]):
    """Run the consumer loop until interrupted."""
    try:
        _check_settings("consumer")
        consumer = create_consumer()
        consumer.install_signal_handlers()

        console.print(
            f"[blue]Consumer started[/blue] "
            f"(every {consumer.settings.consumer.poll_interval_seconds:.0f}s, Ctrl+C to stop)"
        )
        ticks = consumer.run_forever(max_ticks=max_ticks)
        console.print(f"[green]Consumer stopped after {ticks} tick(s)[/green]")
        sys.exit(0)

    except ConfigurationError as e:
        _fail(ctx, "Configuration Error", e)
    except SignalRelayError as e:
        _fail(ctx, "Consumer Error", e)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def tick(ctx, as_json: bool):
    """Run exactly one consumer tick."""
    try:
        _check_settings("consumer")
        consumer = create_consumer()
        result = consumer.tick(correlation_id=ctx.obj.get("correlation_id"))

        if as_json:
            click.echo(
                json.dumps(
                    {
                        "ok": result.ok,
                        "processed": len(result.outcomes),
                        "results": [o.model_dump(mode="json") for o in result.outcomes],
                        "error": result.error_message,
                    },
                    indent=2,
                )
            )
        else:
            _display_tick_result(result)

        sys.exit(0 if result.ok else 1)

    except ConfigurationError as e:
        _fail(ctx, "Configuration Error", e)
    except SignalRelayError as e:
        _fail(ctx, "Tick Error", e)


@main.command()
@click.option("--limit", default=5, help="Maximum items to render per kind")
@click.pass_context
def preview(ctx, limit: int):
    """Render pending items without claiming or sending anything."""
    try:
        settings = get_settings()
        store, _, _ = open_stores(settings)
        formatter = MessageFormatter(settings.telegram.parse_mode)
        now = utcnow()

        shown = 0
        for kind in (ItemKind.SIGNAL.value, ItemKind.NEWS.value):
            for item in store.list_items(status=WorkItemStatus.PENDING.value, kind=kind, limit=limit):
                shown += 1
                console.rule(f"#{item.id} {item.kind}/{item.category}")
                if item.is_expired(now):
                    console.print("[yellow]Expired; will not be claimed[/yellow]")
                    continue
                try:
                    formatter.validate(item)
                except SignalRelayError as e:
                    console.print(f"[yellow]Would be rejected:[/yellow] {e}")
                    continue
                console.print(formatter.format(item), markup=False, highlight=False)

        if not shown:
            console.print("[dim]No pending items[/dim]")
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Preview Error", e)


@main.command("enqueue-signal")
@click.option("--pair", required=True, help="Instrument, e.g. BTC/USDT")
@click.option("--direction", "signal_type", default="LONG", help="LONG, SHORT or free text")
@click.option("--entry", "entry_price", required=True, type=float)
@click.option("--stop", "stop_loss", type=float)
@click.option("--take", "take_profit", type=float)
@click.option("--market", "market_type", default="crypto")
@click.option("--confidence", "confidence_level", type=float)
@click.option("--risk-reward", "risk_reward_ratio", type=float)
@click.option("--reasoning")
@click.option("--warning", "warnings", multiple=True, help="Validation warning (repeatable)")
@click.option(
    "--category",
    type=click.Choice([Category.PREMIUM.value, Category.FREE.value]),
    default=Category.PREMIUM.value,
)
@click.option("--ttl-hours", default=24.0, help="Hours until the signal expires")
@click.option("--expires-at", help="Explicit expiry timestamp (overrides --ttl-hours)")
@click.pass_context
def enqueue_signal_cmd(ctx, category: str, ttl_hours: float, expires_at: Optional[str], warnings, **fields):
    """Queue a test signal."""
    try:
        payload = {k: v for k, v in fields.items() if v is not None}
        if warnings:
            payload["validation_warnings"] = list(warnings)

        store, _, _ = open_stores()
        item = enqueue_signal(
            store, payload, category=category, ttl=timedelta(hours=ttl_hours), expires_at=expires_at
        )
        console.print(
            f"[green]✅ Signal queued[/green] id={item.id} category={item.category} "
            f"expires={item.expires_at:%Y-%m-%d %H:%M} UTC"
        )
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Enqueue Error", e)


@main.command("enqueue-news")
@click.option("--title")
@click.option("--summary")
@click.option("--source")
@click.option("--url")
@click.option("--ttl-hours", default=24.0, help="Hours until the item expires")
@click.option("--expires-at", help="Explicit expiry timestamp (overrides --ttl-hours)")
@click.pass_context
def enqueue_news_cmd(ctx, ttl_hours: float, expires_at: Optional[str], **fields):
    """Queue a test news item."""
    try:
        payload = {k: v for k, v in fields.items() if v}
        if "title" not in payload and "summary" not in payload:
            raise click.UsageError("Provide --title or --summary")

        store, _, _ = open_stores()
        item = enqueue_news(store, payload, ttl=timedelta(hours=ttl_hours), expires_at=expires_at)
        console.print(f"[green]✅ News queued[/green] id={item.id}")
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Enqueue Error", e)


@main.command("init-db")
@click.pass_context
def init_db_cmd(ctx):
    """Create the work item, ledger and failure log tables."""
    try:
        settings = get_settings()
        open_stores(settings, create_tables=True)
        console.print(f"[green]✅ Tables ready[/green] ({settings.store.database_url})")
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Database Error", e)


@main.command("requeue-deferred")
@click.option("--category", type=click.Choice([c.value for c in Category]))
@click.pass_context
def requeue_deferred(ctx, category: Optional[str]):
    """Move deferred items back to pending."""
    try:
        store, _, _ = open_stores()
        count = store.requeue_deferred(category=category)
        console.print(f"[green]✅ {count} deferred item(s) requeued[/green]")
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Requeue Error", e)


@main.command()
@click.option("--minutes", default=30, help="Claim age threshold")
@click.pass_context
def stuck(ctx, minutes: int):
    """List items left in 'sending' longer than the threshold."""
    try:
        store, _, reconciler = open_stores()
        items = store.stale_claims(timedelta(minutes=minutes))
        if not items:
            console.print("[green]✅ No stuck claims[/green]")
            sys.exit(0)

        table = Table(title=f"Claims older than {minutes} minutes")
        table.add_column("ID", style="cyan")
        table.add_column("Kind")
        table.add_column("Category")
        table.add_column("Claimed At")
        table.add_column("Failure Record", style="yellow")
        for item in items:
            table.add_row(
                str(item.id),
                item.kind,
                item.category,
                f"{item.claimed_at:%Y-%m-%d %H:%M:%S}" if item.claimed_at else "",
                "yes" if reconciler.has_unresolved(item.id) else "no",
            )
        console.print(table)
        sys.exit(1)

    except SignalRelayError as e:
        _fail(ctx, "Store Error", e)


@main.group()
def failures():
    """Inspect and resolve delivery failure records."""


@failures.command("list")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved records")
@click.pass_context
def failures_list(ctx, include_resolved: bool):
    """List delivery failure records."""
    try:
        _, _, reconciler = open_stores()
        records = reconciler.list_failures(include_resolved=include_resolved)
        if not records:
            console.print("[green]✅ No delivery failures[/green]")
            sys.exit(0)

        table = Table(title="Delivery Failures")
        table.add_column("ID", style="cyan")
        table.add_column("Item")
        table.add_column("Kind")
        table.add_column("Message ID")
        table.add_column("Channel")
        table.add_column("Created")
        table.add_column("Resolution", style="green")
        table.add_column("Error", style="dim")
        for record in records:
            table.add_row(
                str(record.id),
                str(record.item_id),
                record.kind,
                str(record.transport_message_id or ""),
                record.channel_id or "",
                f"{record.created_at:%Y-%m-%d %H:%M:%S}",
                record.resolution or "",
                (record.error_message or "")[:60],
            )
        console.print(table)
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Failure Log Error", e)


@failures.command("resolve")
@click.argument("record_id", type=int)
@click.option(
    "--as",
    "resolution",
    type=click.Choice(["published", "requeue", "dismiss"]),
    required=True,
    help="published: mark the item sent; requeue: allow a resend; dismiss: close only",
)
@click.pass_context
def failures_resolve(ctx, record_id: int, resolution: str):
    """Resolve a delivery failure record."""
    try:
        store, _, reconciler = open_stores()
        record = reconciler.resolve(record_id, resolution, store)
        console.print(
            f"[green]✅ Record {record.id} resolved as {record.resolution}[/green] "
            f"(item {record.item_id})"
        )
        sys.exit(0)

    except SignalRelayError as e:
        _fail(ctx, "Resolve Error", e)


@main.command()
@click.pass_context
def config(ctx):
    """Display current configuration."""
    try:
        console.print("[blue]signalrelay Configuration[/blue]")

        missing = validate_required_settings()
        if missing:
            console.print("[red]⚠️  Configuration Issues:[/red]")
            for item in missing:
                console.print(f"  • Missing: {item}")
            console.print()
        else:
            console.print("[green]✅ Configuration Valid[/green]")
            console.print()

        print_configuration_summary()

        sys.exit(0 if not missing else 1)

    except Exception as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.pass_context
def health(ctx):
    """Check store and Telegram connectivity."""
    try:
        console.print("[blue]Checking system health...[/blue]")

        consumer = create_consumer()
        health_results = consumer.perform_health_checks()

        overall_status = health_results.get("overall_status", "unknown")
        if overall_status == "healthy":
            console.print("[green]✅ System is healthy[/green]")
        else:
            console.print("[red]❌ System has issues[/red]")

        table = Table(title="Health Check Results")
        table.add_column("Service", style="cyan")
        table.add_column("Status", style="white")
        table.add_column("Details", style="dim")

        for service, status in health_results.items():
            if service == "overall_status":
                continue

            details = ""
            if status.get("error"):
                details = status["error"][:50]
            elif status.get("details"):
                details = ", ".join(f"{k}={v}" for k, v in status["details"].items() if k != "status")

            if status.get("status") == "healthy":
                status_text = "[green]✅ Healthy[/green]"
            else:
                status_text = "[red]❌ Unhealthy[/red]"

            table.add_row(service.title(), status_text, details)

        console.print(table)
        sys.exit(0 if overall_status == "healthy" else 1)

    except SignalRelayError as e:
        _fail(ctx, "Health Check Error", e)


@main.command()
@click.option("--host", help="Bind address (defaults to API_HOST)")
@click.option("--port", type=int, help="Port (defaults to API_PORT)")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Serve the HTTP single-tick endpoint."""
    try:
        import uvicorn

        from signalrelay.api import build_app

        _check_settings("api")
        settings = get_settings()
        uvicorn.run(
            build_app(settings),
            host=host or settings.api.host,
            port=port or settings.api.port,
            reload=False,
        )

    except SignalRelayError as e:
        _fail(ctx, "Server Error", e)


if __name__ == "__main__":
    main()
