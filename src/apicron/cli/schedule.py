"""
CLI: ``apicron schedule`` - inspect and administer schedules.
"""

from __future__ import annotations

import typer

from apicron.cli.utils import cli_errors, console, open_engine, output_result
from apicron.core.models import Schedule

app = typer.Typer(no_args_is_help=True)

_LIST_COLUMNS = (
    "id",
    "schedule_type",
    "enabled",
    "status",
    "cron_expression",
    "timezone",
    "last_executed_at",
    "execution_count",
    "failure_count",
)


def _row(schedule: Schedule) -> dict:
    data = schedule.to_dict()
    return {k: data[k] for k in _LIST_COLUMNS}


@app.command("list")
def list_schedules(
    schedule_type: str | None = typer.Option(None, "--type", help="cron or manual"),
    status: str | None = typer.Option(None, "--status", help="active, inactive, paused or failed"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List schedules in id order."""
    with open_engine(database) as engine, cli_errors():
        schedules = engine.store.list_all(schedule_type=schedule_type, status=status)
    if json_out:
        output_result([s.to_dict() for s in schedules], as_json=True)
    else:
        output_result([_row(s) for s in schedules], title="Schedules")


@app.command("show")
def show_schedule(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show every field of one schedule."""
    with open_engine(database) as engine, cli_errors():
        schedule = engine.store.require(schedule_id)
    output_result(schedule, as_json=json_out, title=f"Schedule: {schedule_id}")


@app.command("pause")
def pause(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Disable a schedule (status=paused)."""
    with open_engine(database) as engine, cli_errors():
        engine.store.pause(schedule_id)
    console.print(f"[yellow]⏸[/yellow] Schedule {schedule_id} paused")


@app.command("resume")
def resume(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Re-enable a paused schedule (status=active)."""
    with open_engine(database) as engine, cli_errors():
        engine.store.resume(schedule_id)
    console.print(f"[green]▶[/green] Schedule {schedule_id} resumed")


@app.command("reset-failures")
def reset_failures(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Set the failure count back to zero."""
    with open_engine(database) as engine, cli_errors():
        engine.store.reset_failure_count(schedule_id)
    console.print(f"[green]✓[/green] Failure count reset for schedule {schedule_id}")


@app.command("reactivate")
def reactivate(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Return a failed schedule to active."""
    with open_engine(database) as engine, cli_errors():
        engine.store.reactivate(schedule_id)
    console.print(f"[green]✓[/green] Schedule {schedule_id} reactivated")


@app.command("trigger")
def trigger(
    schedule_id: int = typer.Argument(..., help="Schedule ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Queue an immediate execution, whatever the schedule type."""
    with open_engine(database) as engine, cli_errors():
        task = engine.dispatcher.trigger(schedule_id)
    if json_out:
        output_result(
            {"task_id": task.task_id, "schedule_id": task.schedule_id, "attempt": task.attempt},
            as_json=True,
        )
    else:
        console.print(f"[green]✓[/green] Schedule {schedule_id} queued (task {task.task_id})")
