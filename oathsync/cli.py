"""oathsync CLI - operator commands around the sync engine.

Commands:
- init: Initialize database schema
- add-client: Register a client (name + alternate names)
- sync: Run one incremental sync
- status: Show the sync status record
- queue: Preview the scored enrichment queue
"""

from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import typer
from rich.console import Console
from rich.table import Table

from oathsync.config import get_config
from oathsync.core.logging import configure_logging
from oathsync.db.connection import close_db, get_engine, get_session, get_session_factory, init_db
from oathsync.db.repository import ClientRepository, SyncStatusRepository
from oathsync.enrichment.priority import tier_label
from oathsync.enrichment.queue import EnrichmentQueueProcessor
from oathsync.enrichment.quota import QuotaTracker
from oathsync.models import Client
from oathsync.pipeline.orchestrator import SyncOrchestrator
from oathsync.pipeline.types import EnrichmentResult, SyncSummary

app = typer.Typer(
    name="oathsync",
    help="oathsync - incremental sync of NYC OATH summonses",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main():
    """Configure logging for every command."""
    configure_logging(get_config())


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        if drop:
            console.print("[yellow]Dropping existing tables...[/yellow]")
        await init_db(get_engine(), drop=drop)
        await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="add-client")
def add_client(
    name: str = typer.Argument(..., help="Client legal name"),
    aka: list[str] = typer.Option([], "--aka", "-a", help="Alternate name (repeatable)"),
    owner: str = typer.Option(None, "--owner", help="Owning user reference"),
):
    """Register a client for respondent matching."""
    if not name.strip():
        console.print("[red]Client name must not be empty[/red]")
        raise typer.Exit(1)

    client = Client(id=str(uuid4()), name=name.strip(), akas=aka, owner=owner)

    async def _add():
        async with get_session() as session:
            await ClientRepository(session).add(client)
        await close_db()

    asyncio.run(_add())
    console.print(f"[bold green]✓[/bold green] Added client {client.name} ({client.id})")


@app.command()
def sync(
    as_json: bool = typer.Option(False, "--json", help="Print the raw summary as JSON"),
):
    """Run one incremental sync (metadata, ghost detection, enrichment)."""
    config = get_config()

    async def _sync() -> SyncSummary:
        try:
            return await SyncOrchestrator(config, get_session_factory()).run()
        finally:
            await close_db()

    summary = asyncio.run(_sync())

    if as_json:
        console.print_json(json.dumps(summary.to_dict()))
    else:
        _print_summary(summary)

    if not summary.success:
        raise typer.Exit(1)


def _print_summary(summary: SyncSummary) -> None:
    style = "green" if summary.success else "red"
    console.print(
        f"\n[bold]Sync run {summary.run_id}[/bold] "
        f"[{style}]{summary.status_code}[/{style}] in {summary.duration_seconds:.1f}s"
    )
    if summary.skipped_reason:
        console.print(f"[yellow]Skipped: {summary.skipped_reason}[/yellow]")
    if summary.error:
        console.print(f"[red]Error: {summary.error}[/red]")

    data = summary.to_dict()
    table = Table(title="Phase Results")
    table.add_column("Phase", style="cyan")
    table.add_column("Counter")
    table.add_column("Value", justify="right")

    for phase in ("fetch", "metadata", "ghost", "enrichment"):
        for key, value in (data.get(phase) or {}).items():
            if isinstance(value, list):
                value = ", ".join(value) or "-"
            table.add_row(phase, key, str(value))

    console.print(table)


@app.command()
def status():
    """Show the sync status record."""
    config = get_config()

    async def _status():
        async with get_session() as session:
            record = await SyncStatusRepository(session, config.run.status_id).get()
        await close_db()
        return record

    record = asyncio.run(_status())
    if record is None:
        console.print("[yellow]No sync has run yet[/yellow]")
        return

    table = Table(title=f"Sync Status ({record.id})")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for column in record.__table__.columns:
        if column.name == "id":
            continue
        table.add_row(column.name, str(getattr(record, column.name)))
    console.print(table)


@app.command()
def queue(
    limit: int = typer.Option(20, "--limit", "-n", help="Rows to show"),
):
    """Preview the enrichment queue in processing order (no worker calls)."""
    config = get_config()

    async def _queue():
        factory = get_session_factory()
        quota = QuotaTracker(factory, config.enrichment.max_daily, config.run.status_id)
        processor = EnrichmentQueueProcessor(factory, None, quota, config.enrichment)
        result = EnrichmentResult()
        entries = await processor.build_queue(result)
        remaining = await quota.remaining()
        await close_db()
        return entries, result, remaining

    entries, result, remaining = asyncio.run(_queue())

    console.print(
        f"[bold]{len(entries)} eligible[/bold], {result.excluded_by_cap} at failure cap, "
        f"{result.excluded_by_date} before hearing floor, {remaining} quota remaining today"
    )

    table = Table(title="Enrichment Queue")
    table.add_column("#", justify="right")
    table.add_column("Summons", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Tier")
    table.add_column("Hearing")
    table.add_column("Failures", justify="right")
    table.add_column("Mode")

    for position, entry in enumerate(entries[:limit], start=1):
        row_style = None if position <= remaining else "dim"
        table.add_row(
            str(position),
            entry.summons_number,
            str(entry.score),
            tier_label(entry.score),
            (entry.hearing_date or "-")[:10],
            str(entry.failure_count),
            "healing" if entry.healing else "",
            style=row_style,
        )
    console.print(table)


if __name__ == "__main__":
    app()
