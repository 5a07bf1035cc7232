"""CLI commands for crust.

Provides command-line interface using Typer:
- crust init-db: Create database tables
- crust invalidate: Invalidate cache entries for an entity class
- crust backfill-analytics: Aggregate every delivered order
- crust retry-aggregations: Replay failed post-order aggregation steps
- crust status: Show live system status

Usage:
    crust --help
    crust invalidate product --id 3f2a...
    crust invalidate dashboard
    crust backfill-analytics --no-dedupe
"""

import typer

from crust.cli.aggregation_cmd import backfill_app, retry_app
from crust.cli.cache_cmd import app as invalidate_app
from crust.cli.db_cmd import app as init_db_app
from crust.cli.status_cmd import app as status_app
from crust.config import settings
from crust.observability.logging import configure_logging

# Main CLI application
app = typer.Typer(
    name="crust",
    help="crust: cache-backed read model and order analytics",
    no_args_is_help=True,
)

app.add_typer(init_db_app, name="init-db")
app.add_typer(invalidate_app, name="invalidate")
app.add_typer(backfill_app, name="backfill-analytics")
app.add_typer(retry_app, name="retry-aggregations")
app.add_typer(status_app, name="status")


@app.callback()
def callback() -> None:
    """crust: cache-backed read model and order analytics."""
    configure_logging(json_format=settings.json_logs, level=settings.log_level)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
