"""
Execution task queue.

An execution task is an explicit message: schedule id, attempt number and
not-before instant. The dispatcher submits attempt 1 with no delay; the
worker's retry path submits attempt *n+1* with the backoff delay. Workers
claim tasks whose not-before has passed and ack them when the attempt is
settled.

Manifesto:
    Submission is decoupled from execution. A tick only writes a message and
    returns, retries never block a worker slot while they wait, and a task
    claimed by a worker that died becomes claimable again after the
    visibility window (at-least-once delivery).

Architecture:
    ::

        submit(schedule_id, delay, attempt)
              │
              ▼
        ┌──────────────┐  claim(now, limit)   ┌──────────┐   ack(task)
        │   pending    │ ───────────────────► │ claimed  │ ───────────► gone
        │ not_before ≤ │                      │ claimed_at│
        └──────────────┘ ◄─── visibility ──── └──────────┘
                               timeout

Implementations:
    - ``InMemoryTaskQueue``: heap + lock, single process (tests, ``beat``)
    - ``SqlTaskQueue``: ``execution_tasks`` table shared across processes

Tags:
    queue, task, at-least-once, retry, backoff

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import heapq
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol, TypeVar, runtime_checkable
from uuid import uuid4

from apicron.core.clock import Clock, SystemClock
from apicron.core.connection import atomic
from apicron.core.dialect import Dialect, SQLiteDialect
from apicron.core.errors import StoreUnavailable
from apicron.core.logging import get_logger
from apicron.core.models import ExecutionTask
from apicron.core.protocols import Connection
from apicron.core.timestamps import from_iso8601, to_iso8601

T = TypeVar("T")

logger = get_logger(__name__)


@runtime_checkable
class TaskQueue(Protocol):
    """Queue contract shared by the dispatcher, worker and retry path."""

    def submit(self, schedule_id: int, delay: float | None = None, attempt: int = 1) -> ExecutionTask:
        """Enqueue an attempt, runnable after ``delay`` seconds."""
        ...

    def claim(self, now: datetime | None = None, limit: int = 1) -> list[ExecutionTask]:
        """Claim up to ``limit`` runnable tasks, oldest not-before first."""
        ...

    def ack(self, task: ExecutionTask) -> None:
        """Remove a settled task."""
        ...

    def has_pending(self, schedule_id: int) -> bool:
        """True if any unacked task (waiting, delayed or claimed) exists."""
        ...

    def pending_count(self) -> int:
        ...


def _new_task(clock: Clock, schedule_id: int, delay: float | None, attempt: int) -> ExecutionTask:
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if delay is not None and delay < 0:
        raise ValueError(f"delay must be non-negative, got {delay}")
    now = clock.now()
    return ExecutionTask(
        task_id=uuid4().hex,
        schedule_id=schedule_id,
        attempt=attempt,
        not_before=now + timedelta(seconds=delay or 0),
        enqueued_at=now,
    )


class InMemoryTaskQueue:
    """Thread-safe in-process queue ordered by not-before."""

    def __init__(self, clock: Clock | None = None, visibility_seconds: float = 600.0) -> None:
        self.clock: Clock = clock or SystemClock()
        self.visibility_seconds = visibility_seconds
        self._lock = threading.Lock()
        self._heap: list[tuple[datetime, int, ExecutionTask]] = []
        self._claimed: dict[str, tuple[ExecutionTask, datetime]] = {}
        self._seq = 0

    def submit(self, schedule_id: int, delay: float | None = None, attempt: int = 1) -> ExecutionTask:
        task = _new_task(self.clock, schedule_id, delay, attempt)
        with self._lock:
            self._push(task)
        logger.debug("task_submitted", schedule_id=schedule_id, attempt=attempt, delay=delay or 0)
        return task

    def claim(self, now: datetime | None = None, limit: int = 1) -> list[ExecutionTask]:
        now = now or self.clock.now()
        with self._lock:
            self._requeue_expired(now)
            claimed: list[ExecutionTask] = []
            while self._heap and len(claimed) < limit and self._heap[0][0] <= now:
                _, _, task = heapq.heappop(self._heap)
                self._claimed[task.task_id] = (task, now)
                claimed.append(task)
            return claimed

    def ack(self, task: ExecutionTask) -> None:
        with self._lock:
            self._claimed.pop(task.task_id, None)

    def has_pending(self, schedule_id: int) -> bool:
        with self._lock:
            return any(t.schedule_id == schedule_id for _, _, t in self._heap) or any(
                t.schedule_id == schedule_id for t, _ in self._claimed.values()
            )

    def pending_count(self) -> int:
        with self._lock:
            return len(self._heap) + len(self._claimed)

    def next_due_at(self) -> datetime | None:
        """Not-before of the earliest waiting task."""
        with self._lock:
            return self._heap[0][0] if self._heap else None

    def _push(self, task: ExecutionTask) -> None:
        self._seq += 1
        heapq.heappush(self._heap, (task.not_before, self._seq, task))

    def _requeue_expired(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.visibility_seconds)
        for task_id, (task, claimed_at) in list(self._claimed.items()):
            if claimed_at < cutoff:
                del self._claimed[task_id]
                self._push(task)
                logger.warning("task_redelivered", task_id=task_id, schedule_id=task.schedule_id)


class SqlTaskQueue:
    """Durable queue over the ``execution_tasks`` table.

    A claim is a conditional ``UPDATE ... WHERE status = 'pending'`` per
    candidate row, so two workers racing for the same task cannot both win.
    """

    _COLUMNS = "task_id, schedule_id, attempt, not_before, enqueued_at"

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Clock | None = None,
        visibility_seconds: int = 600,
        consumer_id: str | None = None,
    ) -> None:
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()
        self.clock: Clock = clock or SystemClock()
        self.visibility_seconds = visibility_seconds
        self.consumer_id = consumer_id or uuid4().hex[:12]

    def _ph(self, count: int = 1) -> str:
        return self.dialect.placeholders(count)

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            with atomic(self.conn):
                return fn()
        except Exception as e:
            raise StoreUnavailable(f"queue.{operation}", cause=e) from e

    def submit(self, schedule_id: int, delay: float | None = None, attempt: int = 1) -> ExecutionTask:
        task = _new_task(self.clock, schedule_id, delay, attempt)

        def _insert() -> None:
            self.conn.execute(
                f"INSERT INTO execution_tasks ({self._COLUMNS}, status) VALUES ({self._ph(5)}, 'pending')",
                (
                    task.task_id,
                    task.schedule_id,
                    task.attempt,
                    to_iso8601(task.not_before),
                    to_iso8601(task.enqueued_at),
                ),
            )
            self.conn.commit()

        self._run("submit", _insert)
        logger.debug("task_submitted", schedule_id=schedule_id, attempt=attempt, delay=delay or 0)
        return task

    def claim(self, now: datetime | None = None, limit: int = 1) -> list[ExecutionTask]:
        now = now or self.clock.now()
        stale_before = now - timedelta(seconds=self.visibility_seconds)
        ph = self._ph()

        def _claim() -> list[ExecutionTask]:
            candidates = self.conn.execute(
                f"""
                SELECT {self._COLUMNS}, status FROM execution_tasks
                WHERE (status = 'pending' AND not_before <= {ph})
                   OR (status = 'claimed' AND claimed_at < {ph})
                ORDER BY not_before, enqueued_at
                LIMIT {int(limit)}
                """,
                (to_iso8601(now), to_iso8601(stale_before)),
            ).fetchall()

            claimed: list[ExecutionTask] = []
            for row in candidates:
                previous_status = row[5]
                guard = "status = 'pending'" if previous_status == "pending" else (
                    f"status = 'claimed' AND claimed_at < {ph}"
                )
                params: tuple = (self.consumer_id, to_iso8601(now), row[0])
                if previous_status != "pending":
                    params = params + (to_iso8601(stale_before),)
                cursor = self.conn.execute(
                    f"UPDATE execution_tasks SET status = 'claimed', claimed_by = {ph}, claimed_at = {ph} "
                    f"WHERE task_id = {ph} AND {guard}",
                    params,
                )
                if cursor.rowcount > 0:
                    if previous_status != "pending":
                        logger.warning("task_redelivered", task_id=row[0], schedule_id=row[1])
                    claimed.append(self._row_to_task(row))
            self.conn.commit()
            return claimed

        return self._run("claim", _claim)

    def ack(self, task: ExecutionTask) -> None:
        def _delete() -> None:
            self.conn.execute(
                f"DELETE FROM execution_tasks WHERE task_id = {self._ph()}",
                (task.task_id,),
            )
            self.conn.commit()

        self._run("ack", _delete)

    def has_pending(self, schedule_id: int) -> bool:
        row = self._run(
            "has_pending",
            lambda: self.conn.execute(
                f"SELECT 1 FROM execution_tasks WHERE schedule_id = {self._ph()} LIMIT 1",
                (schedule_id,),
            ).fetchone(),
        )
        return row is not None

    def pending_count(self) -> int:
        row = self._run(
            "pending_count",
            lambda: self.conn.execute("SELECT COUNT(*) FROM execution_tasks").fetchone(),
        )
        return int(row[0]) if row else 0

    def next_due_at(self) -> datetime | None:
        row = self._run(
            "next_due_at",
            lambda: self.conn.execute(
                "SELECT MIN(not_before) FROM execution_tasks WHERE status = 'pending'"
            ).fetchone(),
        )
        return from_iso8601(row[0]) if row else None

    @staticmethod
    def _row_to_task(row) -> ExecutionTask:
        return ExecutionTask(
            task_id=row[0],
            schedule_id=row[1],
            attempt=row[2],
            not_before=from_iso8601(row[3]),
            enqueued_at=from_iso8601(row[4]),
        )


__all__ = ["InMemoryTaskQueue", "SqlTaskQueue", "TaskQueue"]
