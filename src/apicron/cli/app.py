"""
Root Typer application for the apicron CLI.

``process`` and ``monitor`` run one pass each and exit, which is how cron or
a container scheduler drives them. ``beat`` keeps both loops (and a worker
pool, when a call executor is configured) running in one process.
"""

from __future__ import annotations

import typer
from typer import Typer

from apicron import __version__
from apicron.cli.utils import load_settings
from apicron.core.logging import configure_logging

app = Typer(
    name="apicron",
    help="apicron - cron dispatch, execution and monitoring for scheduled API calls.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"apicron {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override APICRON_LOG_LEVEL."),
) -> None:
    """apicron CLI - dispatch due schedules, run workers, sweep health."""
    settings = load_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)


# ── Sub-command registration ─────────────────────────────────────────────

from apicron.cli.db import app as db_app  # noqa: E402
from apicron.cli.run import beat, monitor, process, work  # noqa: E402
from apicron.cli.schedule import app as sched_app  # noqa: E402

app.command("process")(process)
app.command("monitor")(monitor)
app.command("work")(work)
app.command("beat")(beat)

app.add_typer(sched_app, name="schedule", help="Schedule administration.")
app.add_typer(db_app, name="db", help="Database operations.")
