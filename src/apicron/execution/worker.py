"""
Execution worker and worker pool.

Manifesto:
    One task is one attempt. The worker takes the schedule's lease, stamps
    ``last_executed_at``, calls the collaborator under a hard timeout and
    settles the attempt:

    - success: ``execution_count += 1``
    - failure (reported, raised or timed out): ``failure_count += 1``, then
      either a delayed retry task is submitted or, with the budget spent,
      the schedule is moved to ``failed``

    Retries are new queue messages with a not-before time, so a worker slot
    is never parked on a backoff sleep.

Architecture:
    ::

        WorkerLoop.run()
          │ claim(now, free slots)
          ▼
        ExecutionWorker.handle(task)
          ├─ store.get(schedule_id)               missing ────► ack
          ├─ leases.acquire(schedule_id, token)   held ───────► ack (skipped)
          │                                       held, retry ► resubmit same attempt (deferred)
          ├─ store.mark_attempt_started()
          ├─ run_with_timeout_async(invoke(collaborator, schedule))
          │     ├─ success ─► increment_execution_count, next_execution_at
          │     └─ failure ─► increment_failure_count
          │                    ├─ budget left ─► queue.submit(attempt+1, delay)
          │                    └─ exhausted ───► store.mark_failed()
          ├─ leases.release(schedule_id, token)
          └─ queue.ack(task)

    A ``StoreUnavailable`` before the attempt settles leaves the task
    unacked; the queue redelivers it after the visibility window.

Examples:
    >>> worker = ExecutionWorker(store, queue, executor, leases)
    >>> loop = WorkerLoop(worker, queue, concurrency=4)
    >>> await loop.run_once()

Tags:
    worker, execution, retry, backoff, timeout, lease

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from apicron.core.clock import Clock, SystemClock
from apicron.core.errors import (
    ExecutionFailure,
    InvalidExpression,
    StoreUnavailable,
    TimeoutExceeded,
)
from apicron.core.logging import LogContext, get_logger
from apicron.core.models import CallResult, ExecutionTask, Schedule, ScheduleType
from apicron.core.scheduling.cron import CronEvaluator
from apicron.core.scheduling.lock_manager import LockManager
from apicron.core.scheduling.repository import ScheduleStore
from apicron.execution.collaborator import CallExecutor, invoke
from apicron.execution.queue import TaskQueue
from apicron.execution.retry import BackoffTable, RetryPolicy
from apicron.execution.timeout import TimeoutExpired, run_with_timeout_async
from apicron.observability.metrics import SchedulerMetrics


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    MISSING = "missing"


@dataclass
class AttemptReport:
    """What happened to one task."""

    task: ExecutionTask
    outcome: AttemptOutcome
    message: str = ""
    error: dict[str, Any] | None = None
    retry_delay: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task.task_id,
            "schedule_id": self.task.schedule_id,
            "attempt": self.task.attempt,
            "outcome": self.outcome.value,
            "message": self.message,
            "error": self.error,
            "retry_delay": self.retry_delay,
        }


class ExecutionWorker:
    """Runs single execution attempts and applies the retry policy."""

    def __init__(
        self,
        store: ScheduleStore,
        queue: TaskQueue,
        executor: CallExecutor,
        lock_manager: LockManager | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 300.0,
        lease_ttl_seconds: int | None = None,
        min_defer_seconds: float = 5.0,
        evaluator: CronEvaluator | None = None,
        default_timezone: str = "UTC",
        clock: Clock | None = None,
        logger: Any = None,
        metrics: SchedulerMetrics | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.executor = executor
        self.lock_manager = lock_manager
        self.retry_policy = retry_policy or BackoffTable()
        self.timeout_seconds = timeout_seconds
        self.lease_ttl_seconds = lease_ttl_seconds or int(timeout_seconds) + 30
        self.min_defer_seconds = min_defer_seconds
        self.clock = clock or SystemClock()
        self.evaluator = evaluator or CronEvaluator(self.clock)
        self.default_timezone = default_timezone
        self.log = logger or get_logger(__name__)
        self.metrics = metrics or SchedulerMetrics()

    async def handle(self, task: ExecutionTask) -> AttemptReport:
        """Run one attempt and ack the task once it is settled."""
        async with LogContext(schedule_id=task.schedule_id, attempt=task.attempt, task_id=task.task_id):
            report = await self._attempt(task)
            self.queue.ack(task)
            self.metrics.executions.labels(outcome=report.outcome.value).inc()
            return report

    async def _attempt(self, task: ExecutionTask) -> AttemptReport:
        schedule = self.store.get(task.schedule_id)
        if schedule is None:
            self.log.warning("execution_schedule_missing", schedule_id=task.schedule_id)
            return AttemptReport(task, AttemptOutcome.MISSING, "schedule no longer exists")

        holder = self.lock_manager.holder_token(task.task_id) if self.lock_manager else None
        if self.lock_manager is not None and not self.lock_manager.acquire_schedule_lock(
            schedule.id, ttl_seconds=self.lease_ttl_seconds, holder=holder
        ):
            if task.attempt > 1:
                return self._defer(task)
            self.log.info("execution_skipped_in_flight", schedule_id=schedule.id)
            return AttemptReport(task, AttemptOutcome.SKIPPED, "another attempt is in flight")

        try:
            return await self._run(schedule, task)
        finally:
            self._release(schedule.id, holder)

    def _defer(self, task: ExecutionTask) -> AttemptReport:
        # Retries keep their attempt number and wait out the current lease
        remaining = self.lock_manager.lease_remaining(task.schedule_id) if self.lock_manager else None
        delay = max(remaining or 0.0, self.min_defer_seconds)
        self.queue.submit(task.schedule_id, delay=delay, attempt=task.attempt)
        self.log.info(
            "execution_retry_deferred",
            schedule_id=task.schedule_id,
            attempt=task.attempt,
            delay_seconds=delay,
        )
        return AttemptReport(
            task, AttemptOutcome.DEFERRED, "retry waits for the in-flight attempt", retry_delay=delay
        )

    async def _run(self, schedule: Schedule, task: ExecutionTask) -> AttemptReport:
        self.store.mark_attempt_started(schedule.id, self.clock.now())
        self.log.info(
            "execution_attempt_started",
            schedule_id=schedule.id,
            attempt=task.attempt,
            max_attempts=self.retry_policy.max_attempts(schedule),
        )

        try:
            result: CallResult = await run_with_timeout_async(
                invoke(self.executor, schedule),
                self.timeout_seconds,
                operation=f"schedule:{schedule.id}",
            )
            if not result.success:
                raise ExecutionFailure(
                    result.message or "call execution reported failure",
                    schedule_id=schedule.id,
                    attempt=task.attempt,
                )
        except TimeoutExpired as e:
            failure: ExecutionFailure = TimeoutExceeded(
                self.timeout_seconds, schedule_id=schedule.id, attempt=task.attempt, cause=e
            )
            return self._on_failure(schedule, task, failure)
        except ExecutionFailure as e:
            return self._on_failure(schedule, task, e)
        except Exception as e:
            failure = ExecutionFailure(
                f"{type(e).__name__}: {e}", schedule_id=schedule.id, attempt=task.attempt, cause=e
            )
            return self._on_failure(schedule, task, failure)

        return self._on_success(schedule, task, result)

    def _on_success(self, schedule: Schedule, task: ExecutionTask, result: CallResult) -> AttemptReport:
        self.store.increment_execution_count(schedule.id)
        if schedule.schedule_type == ScheduleType.CRON and schedule.cron_expression:
            self._stamp_next_execution(schedule)
        self.log.info(
            "execution_succeeded",
            schedule_id=schedule.id,
            attempt=task.attempt,
            message=result.message,
        )
        return AttemptReport(task, AttemptOutcome.SUCCEEDED, result.message)

    def _on_failure(self, schedule: Schedule, task: ExecutionTask, error: ExecutionFailure) -> AttemptReport:
        self.store.increment_failure_count(schedule.id)
        max_attempts = self.retry_policy.max_attempts(schedule)
        self.log.error(
            "execution_attempt_failed",
            schedule_id=schedule.id,
            attempt=task.attempt,
            max_attempts=max_attempts,
            error=error.to_dict(),
        )

        if self.retry_policy.should_retry(task.attempt, schedule):
            delay = self.retry_policy.delay_for(task.attempt, schedule)
            self.queue.submit(schedule.id, delay=delay, attempt=task.attempt + 1)
            self.log.warning(
                "execution_retry_scheduled",
                schedule_id=schedule.id,
                next_attempt=task.attempt + 1,
                delay_seconds=delay,
            )
            return AttemptReport(
                task, AttemptOutcome.RETRY_SCHEDULED, error.message, error.to_dict(), retry_delay=delay
            )

        transitioned = self.store.mark_failed(schedule.id)
        self.log.error(
            "schedule_failed_permanently",
            schedule_id=schedule.id,
            attempts=task.attempt,
            transitioned=transitioned,
        )
        return AttemptReport(task, AttemptOutcome.FAILED, error.message, error.to_dict())

    def _stamp_next_execution(self, schedule: Schedule) -> None:
        tz = schedule.effective_timezone(self.default_timezone)
        try:
            next_at = self.evaluator.next_run(schedule.cron_expression, self.clock.now(), tz)
        except InvalidExpression as e:
            self.log.warning("next_execution_unavailable", schedule_id=schedule.id, error=e.message)
            return
        self.store.set_next_execution(schedule.id, next_at)

    def _release(self, schedule_id: int, holder: str | None) -> None:
        if self.lock_manager is None:
            return
        try:
            self.lock_manager.release_schedule_lock(schedule_id, holder=holder)
        except StoreUnavailable as e:
            # Lease lapses on its own at expiry
            self.log.warning("lease_release_failed", schedule_id=schedule_id, error=e.message)


@dataclass
class WorkerStats:
    """Counters for one WorkerLoop."""

    started_at: datetime | None = None
    processed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record(self, report: AttemptReport) -> None:
        self.processed += 1
        self.outcomes[report.outcome.value] = self.outcomes.get(report.outcome.value, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "processed": self.processed,
            "outcomes": dict(self.outcomes),
            "errors": self.errors,
        }


class WorkerLoop:
    """Pool that keeps up to ``concurrency`` attempts running at once."""

    def __init__(
        self,
        worker: ExecutionWorker,
        queue: TaskQueue,
        *,
        concurrency: int = 4,
        poll_seconds: float = 2.0,
        clock: Clock | None = None,
        logger: Any = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.worker = worker
        self.queue = queue
        self.concurrency = concurrency
        self.poll_seconds = poll_seconds
        self.clock = clock or worker.clock
        self.log = logger or get_logger(__name__)
        self.stats = WorkerStats()

    async def run_once(self) -> list[AttemptReport]:
        """Claim up to ``concurrency`` runnable tasks and settle them concurrently."""
        tasks = self._claim(self.concurrency)
        if not tasks:
            return []
        results = await asyncio.gather(*(self._safe_handle(t) for t in tasks))
        return [r for r in results if r is not None]

    async def drain(self, max_rounds: int = 1000) -> list[AttemptReport]:
        """Run rounds until nothing is runnable at the current instant."""
        reports: list[AttemptReport] = []
        for _ in range(max_rounds):
            batch = await self.run_once()
            if not batch:
                break
            reports.extend(batch)
        return reports

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Poll the queue until ``stop`` is set, then wait for running attempts."""
        stop = stop or asyncio.Event()
        running: set[asyncio.Task] = set()
        self.stats.started_at = self.clock.now()
        self.log.info("worker_loop_started", concurrency=self.concurrency, poll_seconds=self.poll_seconds)

        while not stop.is_set():
            free = self.concurrency - len(running)
            claimed = self._claim(free) if free > 0 else []
            for task in claimed:
                job = asyncio.create_task(self._safe_handle(task))
                running.add(job)
                job.add_done_callback(running.discard)
            if not claimed:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_seconds)

        if running:
            await asyncio.gather(*running)
        self.log.info("worker_loop_stopped", **self.stats.to_dict())

    def _claim(self, limit: int) -> list[ExecutionTask]:
        try:
            return self.queue.claim(self.clock.now(), limit=limit)
        except StoreUnavailable as e:
            self.stats.errors += 1
            self.log.error("task_claim_failed", error=e.message)
            return []

    async def _safe_handle(self, task: ExecutionTask) -> AttemptReport | None:
        try:
            report = await self.worker.handle(task)
        except StoreUnavailable as e:
            self.stats.errors += 1
            self.log.error(
                "execution_store_unavailable",
                schedule_id=task.schedule_id,
                task_id=task.task_id,
                error=e.message,
            )
            return None
        except Exception:
            self.stats.errors += 1
            self.log.exception("execution_task_crashed", schedule_id=task.schedule_id, task_id=task.task_id)
            return None
        self.stats.record(report)
        return report


__all__ = [
    "AttemptOutcome",
    "AttemptReport",
    "ExecutionWorker",
    "WorkerLoop",
    "WorkerStats",
]
