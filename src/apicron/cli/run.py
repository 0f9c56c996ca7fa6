"""
CLI: the long-running and one-shot loop commands.

``process``   one Dispatcher tick
``monitor``   one Monitor sweep
``work``      the execution worker pool
``beat``      dispatcher + monitor on thread backends, plus workers
"""

from __future__ import annotations

import asyncio

import typer

from apicron.cli.utils import cli_errors, console, open_engine, output_result
from apicron.core.scheduling import TickThread


def process(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Dispatch every schedule due in the current minute."""
    with open_engine(database) as engine:
        report = asyncio.run(engine.dispatcher.tick())
    output_result(report, as_json=json_out, title="Dispatch tick")
    if report.error:
        raise typer.Exit(code=1)


def monitor(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
    metrics: bool = typer.Option(False, "--metrics", help="Print Prometheus text after the sweep."),
) -> None:
    """Run the failed / stuck / stale / summary checks once."""
    with open_engine(database) as engine:
        report = asyncio.run(engine.monitor.sweep())
        exported = engine.metrics.registry.export_prometheus() if metrics else ""

    if json_out:
        output_result(report, as_json=True)
    else:
        summary = report.summary
        if summary is not None:
            console.print(
                f"[bold]Schedules[/bold]  total={summary.total} enabled={summary.enabled} "
                f"disabled={summary.disabled} failed={summary.failed}"
            )
        if report.failed_recent:
            console.print(f"[red]✗[/red] {report.failed_recent} schedule(s) failed recently")
        for item in report.stuck:
            console.print(f"[yellow]![/yellow] {item.message}")
        for item in report.stale:
            console.print(f"[yellow]![/yellow] {item.message}")
        for check, error in report.errors.items():
            console.print(f"[red]✗[/red] check {check} failed: {error}")
        if report.healthy:
            console.print("[green]✓[/green] All schedules healthy")

    if metrics:
        typer.echo(exported)


def work(
    database: str | None = typer.Option(None, "--database", "-d"),
    once: bool = typer.Option(False, "--once", help="Settle every runnable task, then exit."),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", help="Override APICRON_WORKER_CONCURRENCY."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Consume execution tasks and run the scheduled calls.

    Example::

        APICRON_CALL_EXECUTOR=myapp.calls:executor apicron work --concurrency 8
        apicron work --once
    """
    with open_engine(database) as engine:
        with cli_errors():
            loop = engine.worker_loop()
        if concurrency is not None:
            loop.concurrency = max(1, concurrency)

        if once:
            reports = asyncio.run(loop.drain())
            output_result([r.to_dict() for r in reports], as_json=json_out, title="Attempts")
            return

        console.print(
            f"[bold green]Starting apicron worker[/bold green] "
            f"(concurrency={loop.concurrency}, poll={loop.poll_seconds}s)"
        )
        try:
            asyncio.run(loop.run())
        except KeyboardInterrupt:
            console.print("\n[yellow]Worker stopped by user[/yellow]")


def beat(
    database: str | None = typer.Option(None, "--database", "-d"),
    no_worker: bool = typer.Option(False, "--no-worker", help="Only dispatch and monitor."),
) -> None:
    """Run the dispatcher every minute and the monitor every five minutes."""
    with open_engine(database) as engine:
        settings = engine.settings
        run_worker = not no_worker and engine.executor is not None
        tickers = [
            TickThread("dispatcher", engine.dispatcher.tick, settings.dispatch_interval_seconds),
            TickThread("monitor", engine.monitor.sweep, settings.monitor_interval_seconds),
        ]
        for ticker in tickers:
            ticker.start()
        console.print(
            f"[bold green]apicron beat[/bold green] dispatch={settings.dispatch_interval_seconds}s "
            f"monitor={settings.monitor_interval_seconds}s worker={'on' if run_worker else 'off'}"
        )

        try:
            if run_worker:
                asyncio.run(engine.worker_loop().run())
            else:
                asyncio.run(asyncio.Event().wait())
        except KeyboardInterrupt:
            console.print("\n[yellow]Beat stopped by user[/yellow]")
        finally:
            for ticker in tickers:
                ticker.stop()
                health = ticker.health()
                console.print(
                    f"[dim]{health.name}: {health.ticks} ticks, {health.failures} failed[/dim]"
                )
