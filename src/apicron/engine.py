"""
Wiring for a scheduler process.

``create_engine`` builds every component from ``ApicronSettings`` over one
connection, so the CLI commands and tests share the same assembly.

Example:
    >>> engine = create_engine(get_settings())
    >>> await engine.dispatcher.tick()
    >>> await engine.monitor.sweep()
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from apicron.core.clock import Clock, SystemClock
from apicron.core.connection import SqliteConnection
from apicron.core.errors import ConfigError
from apicron.core.protocols import Connection
from apicron.core.schema import create_tables
from apicron.core.scheduling import CronEvaluator, Dispatcher, LockManager, Monitor, ScheduleStore
from apicron.core.settings import ApicronSettings
from apicron.execution.collaborator import CallExecutor, load_call_executor
from apicron.execution.queue import SqlTaskQueue, TaskQueue
from apicron.execution.retry import policy_from_settings
from apicron.execution.worker import ExecutionWorker, WorkerLoop
from apicron.observability.metrics import SchedulerMetrics


@dataclass
class Engine:
    """All components of one scheduler process."""

    settings: ApicronSettings
    conn: Connection
    store: ScheduleStore
    leases: LockManager
    queue: TaskQueue
    dispatcher: Dispatcher
    monitor: Monitor
    metrics: SchedulerMetrics
    clock: Clock
    executor: CallExecutor | None = None
    logger: Any = None

    def worker(self) -> ExecutionWorker:
        """Build the execution worker. Requires a call executor."""
        if self.executor is None:
            raise ConfigError(
                "no call executor configured; set APICRON_CALL_EXECUTOR=module:attribute"
            )
        return ExecutionWorker(
            self.store,
            self.queue,
            self.executor,
            self.leases,
            retry_policy=policy_from_settings(self.settings),
            timeout_seconds=self.settings.execution_timeout_seconds,
            lease_ttl_seconds=self.settings.lease_ttl_seconds,
            default_timezone=self.settings.default_timezone,
            clock=self.clock,
            logger=self.logger,
            metrics=self.metrics,
        )

    def worker_loop(self) -> WorkerLoop:
        return WorkerLoop(
            self.worker(),
            self.queue,
            concurrency=self.settings.worker_concurrency,
            poll_seconds=self.settings.worker_poll_seconds,
            clock=self.clock,
            logger=self.logger,
        )

    def close(self) -> None:
        close = getattr(self.conn, "close", None)
        if close is not None:
            close()


def create_engine(
    settings: ApicronSettings,
    *,
    conn: Connection | None = None,
    executor: CallExecutor | None = None,
    clock: Clock | None = None,
    metrics: SchedulerMetrics | None = None,
    logger: Any = None,
    init_schema: bool = True,
) -> Engine:
    """Assemble store, leases, queue, dispatcher and monitor from settings."""
    if executor is None and settings.call_executor:
        executor = load_call_executor(settings.call_executor)
    conn = conn or SqliteConnection(settings.database)
    if init_schema:
        create_tables(conn)
    clock = clock or SystemClock()
    metrics = metrics or SchedulerMetrics()

    store = ScheduleStore(conn, clock=clock)
    leases = LockManager(conn, clock=clock)
    queue = SqlTaskQueue(conn, clock=clock, visibility_seconds=settings.task_visibility_seconds)
    evaluator = CronEvaluator(clock)

    dispatcher = Dispatcher(
        store,
        queue,
        lock_manager=leases,
        evaluator=evaluator,
        clock=clock,
        default_timezone=settings.default_timezone,
        logger=logger,
        metrics=metrics,
    )
    monitor = Monitor(
        store,
        clock=clock,
        logger=logger,
        metrics=metrics,
        stuck_threshold=settings.stuck_failure_threshold,
        stale_after=timedelta(hours=settings.stale_after_hours),
        failed_window=timedelta(hours=settings.failed_window_hours),
    )
    return Engine(
        settings=settings,
        conn=conn,
        store=store,
        leases=leases,
        queue=queue,
        dispatcher=dispatcher,
        monitor=monitor,
        metrics=metrics,
        clock=clock,
        executor=executor,
        logger=logger,
    )


__all__ = ["Engine", "create_engine"]
