"""CLI command for invalidating cache entries.

Usage:
    crust invalidate product --id 3f2a...
    crust invalidate coupon --id SUMMER10
    crust invalidate dashboard
    crust invalidate product --pattern "crust:products:*"
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console

from crust.cache.policy import EntityClass
from crust.config import settings
from crust.runtime import Runtime

app = typer.Typer(help="Invalidate cached entries")


@app.callback(invoke_without_command=True)
def invalidate(
    entity: EntityClass = typer.Argument(
        ...,
        help="Entity class to invalidate",
        case_sensitive=False,
    ),
    selector: str | None = typer.Option(
        None,
        "--id",
        "-i",
        help="Instance selector (product id or coupon code)",
    ),
    pattern: str | None = typer.Option(
        None,
        "--pattern",
        "-p",
        help="Delete every key matching this glob instead of using the policy registry",
    ),
) -> None:
    """Invalidate an entity's cache entries."""
    asyncio.run(_invalidate(entity, selector, pattern))


async def _invalidate(entity: EntityClass, selector: str | None, pattern: str | None) -> None:
    console = Console()
    runtime = Runtime(settings)
    try:
        if pattern:
            deleted = await runtime.cache.delete_pattern(pattern)
        else:
            deleted = await runtime.store.invalidate(entity, selector)
    finally:
        await runtime.stop()

    target = pattern or entity.value + (f" {selector}" if selector else "")
    console.print(f"[green]Deleted {deleted} keys[/green] for {target}")
