"""
Schedule store.

Explicit query contract over the ``schedules`` table: every read the
dispatcher and monitor need is a named, filtered query that returns
``Schedule`` objects with their collaborator references already loaded,
and every write the worker needs is a single atomic statement.

Architecture:
    ::

        Dispatcher ── list_dispatch_eligible() ───────────────┐
        Monitor ───── count_failed_since() / list_stuck() ────┤
                      list_stale() / count_summary()          │
                                                              ▼
                                                    ┌──────────────────┐
        ExecutionWorker ── mark_attempt_started() ─►│    schedules     │
                           increment_execution_count│                  │
                           increment_failure_count  │  SET n = n + 1   │
                           mark_failed()  (conditional, status<>failed)│
                                                    └──────────────────┘

    Counter updates use ``SET col = col + 1`` so concurrent workers never
    lose an increment. Driver errors are rolled back and re-raised as
    ``StoreUnavailable``.

Examples:
    >>> store = ScheduleStore(conn)
    >>> s = store.create(ScheduleCreate(schedule_type="cron", cron_expression="*/5 * * * *"))
    >>> [x.id for x in store.list_dispatch_eligible()]
    [1]

Tags:
    repository, schedules, sql, atomic-update

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from apicron.core.clock import Clock, SystemClock
from apicron.core.connection import atomic
from apicron.core.dialect import Dialect, SQLiteDialect
from apicron.core.errors import ScheduleNotFound, StoreUnavailable
from apicron.core.models import (
    RetryDelayUnit,
    Schedule,
    ScheduleReferences,
    ScheduleStatus,
    ScheduleType,
)
from apicron.core.protocols import Connection
from apicron.core.timestamps import from_iso8601, to_iso8601

T = TypeVar("T")

_COLUMNS = [
    "id", "schedule_type", "enabled", "cron_expression", "cron_description",
    "timezone", "max_retries", "retry_delay", "retry_delay_unit", "status",
    "api_source_id", "api_request_id", "api_extract_id", "destination_id",
    "last_executed_at", "next_execution_at", "execution_count", "failure_count",
    "created_at", "updated_at",
]
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM schedules"

# enabled ∧ status=active ∧ type=cron ∧ expression present
_ELIGIBLE = (
    "enabled = 1 AND status = 'active' AND schedule_type = 'cron' "
    "AND cron_expression IS NOT NULL"
)


@dataclass
class ScheduleCreate:
    """Input for creating a schedule row."""

    schedule_type: str = ScheduleType.MANUAL.value
    cron_expression: str | None = None
    cron_description: str | None = None
    timezone: str | None = None
    enabled: bool = True
    status: str = ScheduleStatus.ACTIVE.value
    max_retries: int = 3
    retry_delay: int = 5
    retry_delay_unit: str = RetryDelayUnit.MINUTES.value
    api_source_id: int | None = None
    api_request_id: int | None = None
    api_extract_id: int | None = None
    destination_id: int | None = None
    last_executed_at: datetime | None = None
    execution_count: int = 0
    failure_count: int = 0


@dataclass(frozen=True)
class ScheduleCounts:
    """Aggregate counts over all schedules."""

    total: int = 0
    enabled: int = 0
    disabled: int = 0
    active: int = 0
    paused: int = 0
    failed: int = 0
    cron: int = 0
    manual: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "enabled": self.enabled,
            "disabled": self.disabled,
            "active": self.active,
            "paused": self.paused,
            "failed": self.failed,
            "cron": self.cron,
            "manual": self.manual,
        }


class ScheduleStore:
    """Filtered reads and atomic writes over persisted schedules."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize store with database connection.

        Args:
            conn: Database connection (any backend satisfying Connection protocol)
            dialect: SQL dialect for portable queries. Defaults to SQLiteDialect.
            clock: Source of ``updated_at`` stamps. Defaults to the system clock.
        """
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()
        self.clock: Clock = clock or SystemClock()

    def _ph(self, count: int = 1) -> str:
        return self.dialect.placeholders(count)

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            with atomic(self.conn):
                return fn()
        except Exception as e:
            raise StoreUnavailable(operation, cause=e) from e

    def _now(self, now: datetime | None) -> str:
        return to_iso8601(now or self.clock.now())

    # === Create / Read ===

    def create(self, data: ScheduleCreate) -> Schedule:
        """Insert a schedule row and return it."""
        now = self._now(None)
        columns = [
            "schedule_type", "enabled", "cron_expression", "cron_description", "timezone",
            "max_retries", "retry_delay", "retry_delay_unit", "status",
            "api_source_id", "api_request_id", "api_extract_id", "destination_id",
            "last_executed_at", "execution_count", "failure_count", "created_at", "updated_at",
        ]
        values = (
            data.schedule_type, int(data.enabled), data.cron_expression, data.cron_description,
            data.timezone, data.max_retries, data.retry_delay, data.retry_delay_unit, data.status,
            data.api_source_id, data.api_request_id, data.api_extract_id, data.destination_id,
            to_iso8601(data.last_executed_at), data.execution_count, data.failure_count, now, now,
        )

        def _insert() -> int:
            cursor = self.conn.execute(
                f"INSERT INTO schedules ({', '.join(columns)}) VALUES ({self._ph(len(columns))})",
                values,
            )
            self.conn.commit()
            return cursor.lastrowid

        schedule_id = self._run("create", _insert)
        created = self.get(schedule_id)
        if created is None:
            raise StoreUnavailable("create")
        return created

    def get(self, schedule_id: int) -> Schedule | None:
        """Get schedule by id."""
        row = self._run(
            "get",
            lambda: self.conn.execute(f"{_SELECT} WHERE id = {self._ph()}", (schedule_id,)).fetchone(),
        )
        return self._row_to_schedule(row) if row else None

    def require(self, schedule_id: int) -> Schedule:
        schedule = self.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        return schedule

    def list_all(self, *, schedule_type: str | None = None, status: str | None = None) -> list[Schedule]:
        """All schedules ordered by id, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if schedule_type is not None:
            clauses.append(f"schedule_type = {self._ph()}")
            params.append(schedule_type)
        if status is not None:
            clauses.append(f"status = {self._ph()}")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._fetch("list_all", f"{_SELECT}{where} ORDER BY id", tuple(params))

    def list_dispatch_eligible(self) -> list[Schedule]:
        """Enabled, active cron schedules with an expression, in stable id order."""
        return self._fetch("list_dispatch_eligible", f"{_SELECT} WHERE {_ELIGIBLE} ORDER BY id")

    # === Execution bookkeeping (worker) ===

    def mark_attempt_started(self, schedule_id: int, at: datetime | None = None) -> None:
        """Stamp ``last_executed_at`` for an attempt that is about to run."""
        ts = self._now(at)
        self._write(
            "mark_attempt_started",
            f"UPDATE schedules SET last_executed_at = {self._ph()}, updated_at = {self._ph()} "
            f"WHERE id = {self._ph()}",
            (ts, ts, schedule_id),
        )

    def increment_execution_count(self, schedule_id: int, *, now: datetime | None = None) -> None:
        self._write(
            "increment_execution_count",
            f"UPDATE schedules SET execution_count = execution_count + 1, updated_at = {self._ph()} "
            f"WHERE id = {self._ph()}",
            (self._now(now), schedule_id),
        )

    def increment_failure_count(self, schedule_id: int, *, now: datetime | None = None) -> None:
        self._write(
            "increment_failure_count",
            f"UPDATE schedules SET failure_count = failure_count + 1, updated_at = {self._ph()} "
            f"WHERE id = {self._ph()}",
            (self._now(now), schedule_id),
        )

    def set_next_execution(self, schedule_id: int, next_at: datetime | None) -> None:
        self._write(
            "set_next_execution",
            f"UPDATE schedules SET next_execution_at = {self._ph()} WHERE id = {self._ph()}",
            (to_iso8601(next_at), schedule_id),
        )

    def mark_failed(self, schedule_id: int, *, now: datetime | None = None) -> bool:
        """Move a schedule to ``failed`` in one conditional write.

        Returns:
            True if this call made the transition, False if it was already failed.
        """
        return self._write(
            "mark_failed",
            f"UPDATE schedules SET status = 'failed', updated_at = {self._ph()} "
            f"WHERE id = {self._ph()} AND status <> 'failed'",
            (self._now(now), schedule_id),
        ) > 0

    # === Health queries (monitor, read-only) ===

    def count_failed_since(self, since: datetime) -> int:
        """Schedules in ``failed`` whose row changed after ``since``."""
        row = self._run(
            "count_failed_since",
            lambda: self.conn.execute(
                f"SELECT COUNT(*) FROM schedules WHERE status = 'failed' AND updated_at > {self._ph()}",
                (to_iso8601(since),),
            ).fetchone(),
        )
        return int(row[0]) if row else 0

    def list_stuck(self, threshold: int = 5) -> list[Schedule]:
        """Enabled schedules with ``failure_count >= threshold``, whatever their status."""
        return self._fetch(
            "list_stuck",
            f"{_SELECT} WHERE enabled = 1 AND failure_count >= {self._ph()} ORDER BY failure_count DESC, id",
            (threshold,),
        )

    def list_stale(self, cutoff: datetime) -> list[Schedule]:
        """Eligible schedules that never ran or last ran before ``cutoff``."""
        return self._fetch(
            "list_stale",
            f"{_SELECT} WHERE {_ELIGIBLE} "
            f"AND (last_executed_at IS NULL OR last_executed_at < {self._ph()}) ORDER BY id",
            (to_iso8601(cutoff),),
        )

    def count_summary(self) -> ScheduleCounts:
        """Fleet-wide counts in a single aggregate query."""
        row = self._run(
            "count_summary",
            lambda: self.conn.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN enabled = 1 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN enabled = 0 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'paused' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN schedule_type = 'cron' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN schedule_type = 'manual' THEN 1 ELSE 0 END), 0)
                FROM schedules
                """
            ).fetchone(),
        )
        return ScheduleCounts(*(int(v) for v in row))

    # === Administrative actions ===

    def pause(self, schedule_id: int) -> Schedule:
        return self._admin_update("pause", schedule_id, "enabled = 0, status = 'paused'")

    def resume(self, schedule_id: int) -> Schedule:
        return self._admin_update("resume", schedule_id, "enabled = 1, status = 'active'")

    def reset_failure_count(self, schedule_id: int) -> Schedule:
        return self._admin_update("reset_failure_count", schedule_id, "failure_count = 0")

    def reactivate(self, schedule_id: int) -> Schedule:
        """Return a failed schedule to ``active``."""
        return self._admin_update("reactivate", schedule_id, "status = 'active'")

    # === Private helpers ===

    def _admin_update(self, operation: str, schedule_id: int, assignments: str) -> Schedule:
        changed = self._write(
            operation,
            f"UPDATE schedules SET {assignments}, updated_at = {self._ph()} WHERE id = {self._ph()}",
            (self._now(None), schedule_id),
        )
        if not changed:
            raise ScheduleNotFound(schedule_id)
        return self.require(schedule_id)

    def _write(self, operation: str, sql: str, params: tuple) -> int:
        def _exec() -> int:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount

        return self._run(operation, _exec)

    def _fetch(self, operation: str, sql: str, params: tuple = ()) -> list[Schedule]:
        rows = self._run(operation, lambda: self.conn.execute(sql, params).fetchall())
        return [self._row_to_schedule(row) for row in rows]

    def _row_to_schedule(self, row: Any) -> Schedule:
        data = dict(zip(_COLUMNS, row, strict=False))
        return Schedule(
            id=data["id"],
            schedule_type=ScheduleType(data["schedule_type"]),
            enabled=bool(data["enabled"]),
            cron_expression=data["cron_expression"],
            cron_description=data["cron_description"],
            timezone=data["timezone"],
            max_retries=data["max_retries"],
            retry_delay=data["retry_delay"],
            retry_delay_unit=RetryDelayUnit(data["retry_delay_unit"]),
            status=ScheduleStatus(data["status"]),
            references=ScheduleReferences(
                api_source_id=data["api_source_id"],
                api_request_id=data["api_request_id"],
                api_extract_id=data["api_extract_id"],
                destination_id=data["destination_id"],
            ),
            last_executed_at=from_iso8601(data["last_executed_at"]),
            next_execution_at=from_iso8601(data["next_execution_at"]),
            execution_count=data["execution_count"],
            failure_count=data["failure_count"],
            created_at=from_iso8601(data["created_at"]),
            updated_at=from_iso8601(data["updated_at"]),
        )


__all__ = ["ScheduleCounts", "ScheduleCreate", "ScheduleStore"]
