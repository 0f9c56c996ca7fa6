"""
Dispatcher - the one-minute tick.

Manifesto:
    A tick only decides and submits. It reads the dispatch-eligible
    schedules, asks the cron evaluator whether each is due in its own
    timezone, and puts one execution task per due schedule on the queue.
    It never waits for an execution to finish.

    Failures are contained per schedule: a bad expression or a failed
    submit skips that schedule for this tick and the loop moves on. Only a
    failure to read the eligible set ends a tick early, and even then the
    tick returns a report instead of raising.

    A due schedule that already has an attempt in flight (a held lease or
    an unacked task, including a delayed retry) is not submitted again.

Architecture:
    ::

        tick(now)
          │
          ├─ store.list_dispatch_eligible()       ─► StoreUnavailable: report.error
          │
          └─ for schedule in eligible (id order):
               tz = schedule.timezone or default
               evaluator.is_due(expr, now, tz)    ─► InvalidExpression: skip, log
               in flight? (lease / pending task)  ─► skip
               queue.submit(schedule.id)          ─► StoreUnavailable: skip, log
          │
          └─ log dispatch_tick_completed(considered, dispatched, ...)

Examples:
    >>> dispatcher = Dispatcher(store, queue, lock_manager=leases, clock=clock)
    >>> report = await dispatcher.tick()
    >>> report.considered, report.dispatched
    (4, 1)

Tags:
    dispatcher, tick, cron, scheduling, idempotent-dispatch

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apicron.core.clock import Clock, SystemClock
from apicron.core.errors import InvalidExpression, StoreUnavailable
from apicron.core.logging import get_logger
from apicron.core.models import ExecutionTask, Schedule
from apicron.core.scheduling.cron import CronEvaluator
from apicron.core.scheduling.lock_manager import LockManager
from apicron.core.scheduling.repository import ScheduleStore
from apicron.execution.queue import TaskQueue
from apicron.observability.metrics import SchedulerMetrics


@dataclass
class DispatchReport:
    """Per-tick summary."""

    tick_at: datetime
    considered: int = 0
    dispatched: int = 0
    skipped_in_flight: int = 0
    invalid: int = 0
    errors: int = 0
    dispatched_ids: list[int] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_at": self.tick_at.isoformat(),
            "considered": self.considered,
            "dispatched": self.dispatched,
            "skipped_in_flight": self.skipped_in_flight,
            "invalid": self.invalid,
            "errors": self.errors,
            "dispatched_ids": list(self.dispatched_ids),
            "error": self.error,
        }


class Dispatcher:
    """Selects due schedules each tick and submits execution tasks."""

    def __init__(
        self,
        store: ScheduleStore,
        queue: TaskQueue,
        *,
        lock_manager: LockManager | None = None,
        evaluator: CronEvaluator | None = None,
        clock: Clock | None = None,
        default_timezone: str = "UTC",
        logger: Any = None,
        metrics: SchedulerMetrics | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.lock_manager = lock_manager
        self.clock = clock or SystemClock()
        self.evaluator = evaluator or CronEvaluator(self.clock)
        self.default_timezone = default_timezone
        self.log = logger or get_logger(__name__)
        self.metrics = metrics or SchedulerMetrics()

    async def tick(self, now: datetime | None = None) -> DispatchReport:
        """Run one dispatch pass at ``now`` (defaults to the clock)."""
        now = now or self.clock.now()
        report = DispatchReport(tick_at=now)
        self.metrics.dispatch_ticks.inc()

        try:
            eligible = self.store.list_dispatch_eligible()
        except StoreUnavailable as e:
            report.error = e.message
            self.log.error("dispatch_tick_store_unavailable", error=e.message)
            return report

        for schedule in eligible:
            report.considered += 1
            self._consider(schedule, now, report)

        self.log.info(
            "dispatch_tick_completed",
            considered=report.considered,
            dispatched=report.dispatched,
            skipped_in_flight=report.skipped_in_flight,
            invalid=report.invalid,
            errors=report.errors,
        )
        return report

    def _consider(self, schedule: Schedule, now: datetime, report: DispatchReport) -> None:
        tz = schedule.effective_timezone(self.default_timezone)
        try:
            due = self.evaluator.is_due(schedule.cron_expression, now, tz)
        except InvalidExpression as e:
            report.invalid += 1
            self.metrics.skipped.labels(reason="invalid_expression").inc()
            self.log.error(
                "schedule_expression_invalid",
                schedule_id=schedule.id,
                expression=schedule.cron_expression,
                timezone=tz,
                error=e.message,
            )
            return

        if not due:
            return

        try:
            if self._in_flight(schedule.id):
                report.skipped_in_flight += 1
                self.metrics.skipped.labels(reason="in_flight").inc()
                self.log.info("schedule_dispatch_skipped_in_flight", schedule_id=schedule.id)
                return
            task = self.queue.submit(schedule.id)
        except StoreUnavailable as e:
            report.errors += 1
            self.metrics.skipped.labels(reason="store_unavailable").inc()
            self.log.error("schedule_dispatch_failed", schedule_id=schedule.id, error=e.message)
            return

        report.dispatched += 1
        report.dispatched_ids.append(schedule.id)
        self.metrics.dispatched.inc()
        self.log.info(
            "schedule_dispatched",
            schedule_id=schedule.id,
            task_id=task.task_id,
            expression=schedule.cron_expression,
            timezone=tz,
        )

    def _in_flight(self, schedule_id: int) -> bool:
        if self.lock_manager is not None and self.lock_manager.is_locked(schedule_id):
            return True
        return self.queue.has_pending(schedule_id)

    def trigger(self, schedule_id: int) -> ExecutionTask:
        """Submit an immediate execution for any schedule type.

        Raises:
            ScheduleNotFound: unknown id
        """
        schedule = self.store.require(schedule_id)
        task = self.queue.submit(schedule.id)
        self.metrics.dispatched.inc()
        self.log.info("schedule_triggered_manually", schedule_id=schedule.id, task_id=task.task_id)
        return task


__all__ = ["DispatchReport", "Dispatcher"]
