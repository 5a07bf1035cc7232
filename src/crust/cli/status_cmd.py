"""CLI command for showing live system status.

Usage:
    crust status
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from crust.config import settings
from crust.core.models import HealthStatus
from crust.runtime import Runtime

app = typer.Typer(help="Show live system status")

_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
}


@app.callback(invoke_without_command=True)
def status() -> None:
    """Check the database and cache."""
    asyncio.run(_status())


async def _status() -> None:
    console = Console()
    runtime = Runtime(settings)
    await runtime.start(warm=False)
    try:
        system = await runtime.dashboard.system_status()
    finally:
        await runtime.stop()

    table = Table(title=f"System status: {system.status.value}")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    for component in system.components:
        style = _STYLES[component.status]
        table.add_row(
            component.name,
            f"[{style}]{component.status.value}[/{style}]",
            component.message or "-",
        )
    console.print(table)
    if system.status == HealthStatus.UNHEALTHY:
        raise typer.Exit(code=1)
