"""
CLI: ``apicron db`` - database setup.
"""

from __future__ import annotations

import typer

from apicron.cli.utils import cli_errors, console, load_settings
from apicron.core.connection import SqliteConnection
from apicron.core.schema import TABLES, create_tables

app = typer.Typer(no_args_is_help=True)


@app.command("init")
def init(
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Create the schedule, lease and task tables (idempotent)."""
    settings = load_settings(database)
    with cli_errors():
        conn = SqliteConnection(settings.database)
        try:
            create_tables(conn)
        finally:
            conn.close()
    console.print(f"[green]✓[/green] Initialized {len(TABLES)} tables in {settings.database}")
