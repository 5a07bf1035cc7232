"""CLI commands for post-order aggregation maintenance.

Usage:
    crust backfill-analytics
    crust backfill-analytics --no-dedupe
    crust retry-aggregations --limit 50
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from crust.config import settings
from crust.runtime import Runtime
from crust.services.aggregation import BatchSummary

backfill_app = typer.Typer(help="Aggregate every delivered order")
retry_app = typer.Typer(help="Replay failed post-order aggregation steps")


def _print_summary(console: Console, title: str, summary: BatchSummary) -> None:
    table = Table(title=title)
    table.add_column("Processed", style="green")
    table.add_column("Duplicates", style="yellow")
    table.add_column("Failed", style="red")
    table.add_row(str(summary.processed), str(summary.duplicates), str(summary.failed))
    console.print(table)


@backfill_app.callback(invoke_without_command=True)
def backfill(
    dedupe: bool = typer.Option(
        True,
        "--dedupe/--no-dedupe",
        help="Skip orders whose aggregation marker is still present",
    ),
) -> None:
    """Process delivered orders in chunks.

    Intended for rebuilding statistics after a migration; with --no-dedupe
    every delivered order is counted again.
    """
    asyncio.run(_backfill(dedupe))


async def _backfill(dedupe: bool) -> None:
    console = Console()
    runtime = Runtime(settings)
    try:
        summary = await runtime.aggregator.backfill(dedupe=dedupe)
    finally:
        await runtime.stop()
    _print_summary(console, "Backfill", summary)
    if summary.failed:
        raise typer.Exit(code=1)


@retry_app.callback(invoke_without_command=True)
def retry(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum records to replay"),
) -> None:
    """Replay failed steps recorded by post-order aggregation."""
    asyncio.run(_retry(limit))


async def _retry(limit: int) -> None:
    console = Console()
    runtime = Runtime(settings)
    try:
        summary = await runtime.aggregator.retry_failed(limit=limit)
    finally:
        await runtime.stop()
    _print_summary(console, "Retried aggregations", summary)
    if summary.failed:
        raise typer.Exit(code=1)
