"""
Per-schedule in-flight leases.

At most one execution attempt per schedule may run at a time. A worker
takes a lease in ``schedule_locks`` before calling the collaborator and
drops it when the attempt finishes. A lease carries an expiry sized to the
execution timeout plus grace, so a crashed worker's lease lapses on its
own and the schedule becomes runnable again.

Each attempt holds the lease under its own token
(``holder_token(task_id)``), so two attempts in the same process never
share a lease and one attempt's release cannot drop another's.

Architecture:
    ::

        acquire(id, ttl, holder)
          1. DELETE expired lease for id
          2. INSERT OR IGNORE (id, holder, locked_at, expires_at)
          3. rowcount == 1 ─► acquired
             else ─► held (even by the same holder)

        refresh(id, ttl, holder) ─► UPDATE expires_at WHERE id AND holder
        release(id, holder)      ─► DELETE WHERE id AND holder

Examples:
    >>> leases = LockManager(conn, instance_id="worker-1")
    >>> token = leases.holder_token(task.task_id)
    >>> if leases.acquire_schedule_lock(42, ttl_seconds=330, holder=token):
    ...     try:
    ...         run_attempt()
    ...     finally:
    ...         leases.release_schedule_lock(42, holder=token)

Tags:
    lock, lease, concurrency, scheduling
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeVar
from uuid import uuid4

from apicron.core.clock import Clock, SystemClock
from apicron.core.connection import atomic
from apicron.core.dialect import Dialect, SQLiteDialect
from apicron.core.errors import StoreUnavailable
from apicron.core.logging import get_logger
from apicron.core.protocols import Connection
from apicron.core.timestamps import from_iso8601, to_iso8601

T = TypeVar("T")

logger = get_logger(__name__)


class LockManager:
    """Database-backed leases with TTL, keyed by schedule id."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        instance_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            conn: Database connection
            dialect: SQL dialect for portable queries
            instance_id: Default holder name written into each lease.
                        Auto-generated if not provided.
            clock: Time source for lease stamps and expiry checks
        """
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()
        self.instance_id = instance_id or str(uuid4())
        self.clock: Clock = clock or SystemClock()

    def _ph(self) -> str:
        return self.dialect.placeholder(0)

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            with atomic(self.conn):
                return fn()
        except Exception as e:
            raise StoreUnavailable(f"lease.{operation}", cause=e) from e

    def holder_token(self, attempt_id: str) -> str:
        """Holder name unique to one attempt within this instance."""
        return f"{self.instance_id}:{attempt_id}"

    # === Schedule Leases ===

    def acquire_schedule_lock(
        self, schedule_id: int, ttl_seconds: int = 330, *, holder: str | None = None
    ) -> bool:
        """Acquire the lease for a schedule.

        Not re-entrant: a second acquire by the same holder fails while the
        first lease is live. Use ``refresh_schedule_lock`` to extend it.

        Returns:
            True if acquired, False if an unexpired lease exists.
        """
        holder = holder or self.instance_id
        now = self.clock.now()
        expires = now + timedelta(seconds=ttl_seconds)
        ph = self._ph()

        def _acquire() -> bool:
            self.conn.execute(
                f"DELETE FROM schedule_locks WHERE schedule_id = {ph} AND expires_at < {ph}",
                (schedule_id, to_iso8601(now)),
            )
            insert_sql = self.dialect.insert_or_ignore(
                "schedule_locks",
                ["schedule_id", "locked_by", "locked_at", "expires_at"],
            )
            cursor = self.conn.execute(
                insert_sql,
                (schedule_id, holder, to_iso8601(now), to_iso8601(expires)),
            )
            self.conn.commit()
            return cursor.rowcount > 0

        acquired = self._run("acquire", _acquire)
        logger.debug(
            "lease_acquired" if acquired else "lease_held_elsewhere",
            schedule_id=schedule_id,
            holder=holder,
        )
        return acquired

    def refresh_schedule_lock(
        self, schedule_id: int, ttl_seconds: int = 330, *, holder: str | None = None
    ) -> bool:
        """Push out the expiry of a lease this holder already owns."""
        holder = holder or self.instance_id
        expires = self.clock.now() + timedelta(seconds=ttl_seconds)
        ph = self._ph()

        def _refresh() -> bool:
            cursor = self.conn.execute(
                f"UPDATE schedule_locks SET expires_at = {ph} "
                f"WHERE schedule_id = {ph} AND locked_by = {ph}",
                (to_iso8601(expires), schedule_id, holder),
            )
            self.conn.commit()
            return cursor.rowcount > 0

        return self._run("refresh", _refresh)

    def release_schedule_lock(self, schedule_id: int, *, holder: str | None = None) -> bool:
        """Release the lease if ``holder`` (default: this instance) holds it."""
        holder = holder or self.instance_id
        ph = self._ph()

        def _release() -> bool:
            cursor = self.conn.execute(
                f"DELETE FROM schedule_locks WHERE schedule_id = {ph} AND locked_by = {ph}",
                (schedule_id, holder),
            )
            self.conn.commit()
            return cursor.rowcount > 0

        released = self._run("release", _release)
        if released:
            logger.debug("lease_released", schedule_id=schedule_id, holder=holder)
        return released

    def is_locked(self, schedule_id: int) -> bool:
        """True if any holder has an unexpired lease on the schedule."""
        return self.get_lock_holder(schedule_id) is not None

    def get_lock_holder(self, schedule_id: int) -> str | None:
        row = self._live_lease(schedule_id)
        return row[0] if row else None

    def lease_remaining(self, schedule_id: int) -> float | None:
        """Seconds until the live lease expires, or None when unleased."""
        row = self._live_lease(schedule_id)
        if row is None:
            return None
        return max((from_iso8601(row[1]) - self.clock.now()).total_seconds(), 0.0)

    def _live_lease(self, schedule_id: int) -> Any:
        ph = self._ph()
        return self._run(
            "holder",
            lambda: self.conn.execute(
                f"SELECT locked_by, expires_at FROM schedule_locks "
                f"WHERE schedule_id = {ph} AND expires_at > {ph}",
                (schedule_id, to_iso8601(self.clock.now())),
            ).fetchone(),
        )

    # === Maintenance ===

    def cleanup_expired_locks(self) -> int:
        """Remove all expired leases. Returns the number removed."""

        def _cleanup() -> int:
            cursor = self.conn.execute(
                f"DELETE FROM schedule_locks WHERE expires_at < {self._ph()}",
                (to_iso8601(self.clock.now()),),
            )
            self.conn.commit()
            return cursor.rowcount

        removed = self._run("cleanup", _cleanup)
        if removed:
            logger.info("expired_leases_removed", count=removed)
        return removed

    def list_active_locks(self) -> list[dict[str, Any]]:
        rows = self._run(
            "list",
            lambda: self.conn.execute(
                f"SELECT schedule_id, locked_by, locked_at, expires_at FROM schedule_locks "
                f"WHERE expires_at > {self._ph()} ORDER BY schedule_id",
                (to_iso8601(self.clock.now()),),
            ).fetchall(),
        )
        return [
            {"schedule_id": r[0], "locked_by": r[1], "locked_at": r[2], "expires_at": r[3]}
            for r in rows
        ]


__all__ = ["LockManager"]
