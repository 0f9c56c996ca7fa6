"""Tests for ExecutionWorker and WorkerLoop."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from apicron.core.errors import StoreUnavailable
from apicron.core.models import CallResult, ScheduleStatus
from apicron.core.scheduling import LockManager
from apicron.execution.collaborator import FunctionCallExecutor
from apicron.execution.retry import BackoffTable, ScheduleRetryPolicy
from apicron.execution.worker import AttemptOutcome, ExecutionWorker, WorkerLoop


@pytest.fixture
def make_worker(store, queue, leases, clock, metrics):
    def _make(executor, **kwargs):
        return ExecutionWorker(store, queue, executor, leases, clock=clock, metrics=metrics, **kwargs)

    return _make


class OverlapTracker:
    """Executor that records how many calls were running at once."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def execute_scheduled_call(self, schedule):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.05)
        self.active -= 1
        return CallResult(success=True)


async def run_next(worker, queue, clock):
    [task] = queue.claim(clock.now())
    return await worker.handle(task)


class TestSuccess:
    """A successful attempt bumps execution_count and stamps the next run."""

    @pytest.mark.asyncio
    async def test_success(self, make_worker, make_schedule, scripted, store, queue, clock, metrics, leases):
        schedule = make_schedule()
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(True)), queue, clock)

        assert report.outcome == AttemptOutcome.SUCCEEDED
        reloaded = store.get(schedule.id)
        assert reloaded.execution_count == 1
        assert reloaded.failure_count == 0
        assert reloaded.last_executed_at == clock.now()
        assert reloaded.next_execution_at == datetime(2026, 1, 1, 12, 10, tzinfo=UTC)
        assert reloaded.status == ScheduleStatus.ACTIVE
        assert queue.pending_count() == 0
        assert leases.is_locked(schedule.id) is False
        assert metrics.executions.labels(outcome="succeeded").value == 1

    @pytest.mark.asyncio
    async def test_manual_schedule_has_no_next_run(self, make_worker, make_schedule, scripted, store, queue, clock):
        schedule = make_schedule(schedule_type="manual", cron_expression=None)
        queue.submit(schedule.id)
        await run_next(make_worker(scripted(True)), queue, clock)
        assert store.get(schedule.id).next_execution_at is None

    @pytest.mark.asyncio
    async def test_lease_held_during_attempt(self, make_worker, make_schedule, store, queue, clock, leases):
        schedule = make_schedule()
        seen = []

        def call(s):
            seen.append(leases.is_locked(s.id))
            return CallResult(success=True)

        queue.submit(schedule.id)
        await run_next(make_worker(FunctionCallExecutor(call)), queue, clock)
        assert seen == [True]
        assert leases.is_locked(schedule.id) is False


class TestFailure:
    """Failures count, retry with backoff, then go terminal."""

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, make_worker, make_schedule, scripted, store, queue, clock):
        schedule = make_schedule()
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(False)), queue, clock)

        assert report.outcome == AttemptOutcome.RETRY_SCHEDULED
        assert report.retry_delay == 60
        assert report.message == "upstream returned 502"
        assert store.get(schedule.id).failure_count == 1
        assert queue.claim(clock.now()) == []

        clock.advance(60)
        [retry] = queue.claim(clock.now())
        assert (retry.schedule_id, retry.attempt) == (schedule.id, 2)

    @pytest.mark.asyncio
    async def test_three_failures_mark_schedule_failed(
        self, make_worker, make_schedule, scripted, store, queue, clock, metrics
    ):
        schedule = make_schedule()
        worker = make_worker(scripted(False, False, False), retry_policy=BackoffTable(3, (60, 300, 900)))
        queue.submit(schedule.id)

        first = await run_next(worker, queue, clock)
        clock.advance(60)
        second = await run_next(worker, queue, clock)
        clock.advance(300)
        third = await run_next(worker, queue, clock)

        assert [r.outcome for r in (first, second, third)] == [
            AttemptOutcome.RETRY_SCHEDULED,
            AttemptOutcome.RETRY_SCHEDULED,
            AttemptOutcome.FAILED,
        ]
        assert [first.retry_delay, second.retry_delay] == [60, 300]
        reloaded = store.get(schedule.id)
        assert reloaded.status == ScheduleStatus.FAILED
        assert reloaded.failure_count == 3
        assert reloaded.execution_count == 0
        assert queue.pending_count() == 0
        assert metrics.executions.labels(outcome="failed").value == 1

    @pytest.mark.asyncio
    async def test_success_after_failure_never_terminal(
        self, make_worker, make_schedule, scripted, store, queue, clock
    ):
        schedule = make_schedule()
        worker = make_worker(scripted(False, True))
        queue.submit(schedule.id)

        await run_next(worker, queue, clock)
        clock.advance(60)
        report = await run_next(worker, queue, clock)

        assert report.outcome == AttemptOutcome.SUCCEEDED
        reloaded = store.get(schedule.id)
        assert reloaded.status == ScheduleStatus.ACTIVE
        assert (reloaded.execution_count, reloaded.failure_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_exception_wrapped_as_execution_failure(
        self, make_worker, make_schedule, scripted, store, queue, clock
    ):
        schedule = make_schedule()
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(ConnectionError("connection reset"))), queue, clock)

        assert report.outcome == AttemptOutcome.RETRY_SCHEDULED
        assert report.error["error_type"] == "ExecutionFailure"
        assert report.error["message"] == "ConnectionError: connection reset"
        assert report.error["cause"] == "ConnectionError: connection reset"
        assert store.get(schedule.id).failure_count == 1

    @pytest.mark.asyncio
    async def test_mapping_failure_message(self, make_worker, make_schedule, store, queue, clock):
        schedule = make_schedule()
        queue.submit(schedule.id)
        executor = FunctionCallExecutor(lambda s: {"success": False, "message": "quota exceeded"})

        report = await run_next(make_worker(executor), queue, clock)
        assert report.message == "quota exceeded"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, make_worker, make_schedule, scripted, store, queue, clock):
        schedule = make_schedule()
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(1.0), timeout_seconds=0.05), queue, clock)

        assert report.outcome == AttemptOutcome.RETRY_SCHEDULED
        assert report.error["error_type"] == "TimeoutExceeded"
        reloaded = store.get(schedule.id)
        assert (reloaded.execution_count, reloaded.failure_count) == (0, 1)

    @pytest.mark.asyncio
    async def test_schedule_retry_policy(self, make_worker, make_schedule, scripted, store, queue, clock):
        schedule = make_schedule(max_retries=0)
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(False), retry_policy=ScheduleRetryPolicy()), queue, clock)

        assert report.outcome == AttemptOutcome.FAILED
        assert store.get(schedule.id).status == ScheduleStatus.FAILED

    @pytest.mark.asyncio
    async def test_schedule_retry_delay_units(self, make_worker, make_schedule, scripted, queue, clock):
        schedule = make_schedule(max_retries=2, retry_delay=90, retry_delay_unit="seconds")
        queue.submit(schedule.id)

        report = await run_next(make_worker(scripted(False), retry_policy=ScheduleRetryPolicy()), queue, clock)
        assert report.retry_delay == 90
        assert queue.next_due_at() == clock.now() + timedelta(seconds=90)


class TestSkips:
    """Tasks that cannot run are settled without touching counters."""

    @pytest.mark.asyncio
    async def test_leased_elsewhere(self, make_worker, make_schedule, scripted, store, queue, clock, conn):
        schedule = make_schedule()
        LockManager(conn, instance_id="worker-b", clock=clock).acquire_schedule_lock(schedule.id)
        executor = scripted(True)
        queue.submit(schedule.id)

        report = await run_next(make_worker(executor), queue, clock)

        assert report.outcome == AttemptOutcome.SKIPPED
        assert executor.calls == []
        reloaded = store.get(schedule.id)
        assert (reloaded.execution_count, reloaded.failure_count) == (0, 0)
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_retry_waits_out_lease_instead_of_vanishing(
        self, make_worker, make_schedule, scripted, store, queue, clock, conn
    ):
        schedule = make_schedule()
        executor = scripted(False, False, False)
        worker = make_worker(executor)
        other = LockManager(conn, instance_id="worker-b", clock=clock)
        queue.submit(schedule.id)

        first = await run_next(worker, queue, clock)
        assert first.outcome == AttemptOutcome.RETRY_SCHEDULED
        other.acquire_schedule_lock(schedule.id, ttl_seconds=330)
        clock.advance(60)

        deferred = await run_next(worker, queue, clock)

        assert deferred.outcome == AttemptOutcome.DEFERRED
        assert deferred.retry_delay == 270.0
        assert len(executor.calls) == 1
        reloaded = store.get(schedule.id)
        assert (reloaded.failure_count, reloaded.status) == (1, ScheduleStatus.ACTIVE)
        assert queue.pending_count() == 1

        other.release_schedule_lock(schedule.id)
        clock.advance(270)
        [retry] = queue.claim(clock.now())
        assert retry.attempt == 2
        second = await worker.handle(retry)
        assert second.outcome == AttemptOutcome.RETRY_SCHEDULED

        clock.advance(300)
        third = await run_next(worker, queue, clock)
        assert third.outcome == AttemptOutcome.FAILED
        assert store.get(schedule.id).status == ScheduleStatus.FAILED
        assert store.get(schedule.id).failure_count == 3

    @pytest.mark.asyncio
    async def test_missing_schedule(self, make_worker, scripted, queue, clock):
        queue.submit(999)
        report = await run_next(make_worker(scripted(True)), queue, clock)
        assert report.outcome == AttemptOutcome.MISSING
        assert queue.pending_count() == 0


class TestWorkerLoop:
    """Concurrent pool over the queue."""

    @pytest.mark.asyncio
    async def test_drain(self, make_worker, make_schedule, scripted, queue, clock):
        for _ in range(3):
            queue.submit(make_schedule().id)
        loop = WorkerLoop(make_worker(scripted()), queue, concurrency=2, clock=clock)

        reports = await loop.drain()

        assert len(reports) == 3
        assert loop.stats.processed == 3
        assert loop.stats.outcomes == {"succeeded": 3}

    @pytest.mark.asyncio
    async def test_concurrent_attempts_keep_counts(self, make_worker, make_schedule, scripted, store, queue, clock):
        ids = [make_schedule().id for _ in range(5)]
        for schedule_id in ids:
            queue.submit(schedule_id)
        loop = WorkerLoop(
            make_worker(scripted(True, False, 0.01, False, True)), queue, concurrency=5, clock=clock
        )

        reports = await loop.run_once()

        assert len(reports) == 5
        totals = [store.get(i).execution_count + store.get(i).failure_count for i in ids]
        assert totals == [1, 1, 1, 1, 1]

    @pytest.mark.asyncio
    async def test_duplicate_tasks_for_one_schedule_never_overlap(
        self, make_worker, make_schedule, store, queue, clock, leases
    ):
        schedule = make_schedule()
        executor = OverlapTracker()
        queue.submit(schedule.id)
        queue.submit(schedule.id)
        loop = WorkerLoop(make_worker(executor), queue, concurrency=4, clock=clock)

        reports = await loop.run_once()

        assert executor.peak == 1
        assert sorted(r.outcome.value for r in reports) == ["skipped", "succeeded"]
        assert store.get(schedule.id).execution_count == 1
        assert leases.is_locked(schedule.id) is False

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, make_worker, make_schedule, scripted, store, queue, clock):
        ids = [make_schedule().id for _ in range(2)]
        for schedule_id in ids:
            queue.submit(schedule_id)
        loop = WorkerLoop(make_worker(scripted()), queue, concurrency=2, poll_seconds=0.01, clock=clock)
        stop = asyncio.Event()

        runner = asyncio.create_task(loop.run(stop))
        for _ in range(200):
            if loop.stats.processed == 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=2)

        assert loop.stats.processed == 2
        assert all(store.get(i).execution_count == 1 for i in ids)

    @pytest.mark.asyncio
    async def test_store_error_leaves_task_for_redelivery(
        self, make_worker, make_schedule, scripted, store, queue, clock, monkeypatch
    ):
        schedule = make_schedule()
        queue.submit(schedule.id)

        def broken_get(schedule_id):
            raise StoreUnavailable("get")

        monkeypatch.setattr(store, "get", broken_get)
        loop = WorkerLoop(make_worker(scripted()), queue, concurrency=1, clock=clock)

        assert await loop.run_once() == []
        assert loop.stats.errors == 1
        assert queue.has_pending(schedule.id)

        monkeypatch.undo()
        clock.advance(601)
        [report] = await loop.run_once()
        assert report.outcome == AttemptOutcome.SUCCEEDED

    def test_concurrency_must_be_positive(self, make_worker, scripted, queue):
        with pytest.raises(ValueError):
            WorkerLoop(make_worker(scripted()), queue, concurrency=0)
