"""
CLI utility helpers: output formatting, engine construction and error mapping.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from apicron.core.errors import ApicronError
from apicron.core.settings import ApicronSettings, get_settings
from apicron.engine import Engine, create_engine

console = Console()
err_console = Console(stderr=True)


# ── Settings / engine ────────────────────────────────────────────────────


def load_settings(database: str | None = None) -> ApicronSettings:
    """Process settings with an optional ``--database`` override."""
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"database": Path(database)})
    return settings


@contextmanager
def open_engine(database: str | None = None) -> Iterator[Engine]:
    """Build an engine for one command and close its connection afterwards."""
    with cli_errors():
        engine = create_engine(load_settings(database))
    try:
        yield engine
    finally:
        engine.close()


@contextmanager
def cli_errors() -> Iterator[None]:
    """Render ``ApicronError`` as a red error line and exit with code 1."""
    try:
        yield
    except ApicronError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert report / dataclass / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_result(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a single object or a list of objects to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list | tuple):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        print_table([_to_dict(d) for d in data], title=title)
    else:
        print_dict(_to_dict(data), title=title)


def print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
