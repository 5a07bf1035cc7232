"""CLI command for creating the database schema.

Usage:
    crust init-db
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console

from crust.config import settings
from crust.core.errors import AuthoritativeStoreError
from crust.persistence.db import Database

app = typer.Typer(help="Create crust database tables")


@app.callback(invoke_without_command=True)
def init_db() -> None:
    """Create all tables that do not exist yet."""
    asyncio.run(_init_db())


async def _init_db() -> None:
    console = Console()
    db = Database.from_settings(settings)
    try:
        await db.init_db()
    except AuthoritativeStoreError as e:
        console.print(f"[red]Could not initialise database:[/red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        await db.close()
    console.print("[green]Database tables are in place[/green]")
