"""
Shared pytest fixtures for apicron tests.

Every test gets its own in-memory SQLite store built through
``apicron.core.schema`` and a ``FrozenClock`` pinned to
2026-01-01 12:05:00 UTC, so due-ness and window checks are deterministic.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from typing import Any

import pytest
import structlog

from apicron.core.clock import FrozenClock
from apicron.core.connection import SqliteConnection
from apicron.core.models import CallResult, Schedule
from apicron.core.schema import create_tables
from apicron.core.scheduling import LockManager, ScheduleCreate, ScheduleStore
from apicron.core.settings import get_settings
from apicron.execution.queue import SqlTaskQueue
from apicron.observability.metrics import MetricsRegistry, SchedulerMetrics

T0 = datetime(2026, 1, 1, 12, 5, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    """Undo logging configuration and cached settings between tests."""
    get_settings.cache_clear()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def conn() -> Generator[SqliteConnection, None, None]:
    """In-memory SQLite with the scheduler schema."""
    connection = SqliteConnection(":memory:")
    create_tables(connection)
    yield connection
    connection.close()


@pytest.fixture
def store(conn, clock) -> ScheduleStore:
    return ScheduleStore(conn, clock=clock)


@pytest.fixture
def leases(conn, clock) -> LockManager:
    return LockManager(conn, instance_id="worker-a", clock=clock)


@pytest.fixture
def queue(conn, clock) -> SqlTaskQueue:
    return SqlTaskQueue(conn, clock=clock, visibility_seconds=600)


@pytest.fixture
def metrics() -> SchedulerMetrics:
    """Metrics on a private registry so counts never leak between tests."""
    return SchedulerMetrics(MetricsRegistry())


@pytest.fixture
def make_schedule(store) -> Callable[..., Schedule]:
    """Factory for schedule rows; defaults to an eligible every-5-minutes cron."""

    def _make(**overrides: Any) -> Schedule:
        fields: dict[str, Any] = {
            "schedule_type": "cron",
            "cron_expression": "*/5 * * * *",
            "timezone": "UTC",
        }
        fields.update(overrides)
        return store.create(ScheduleCreate(**fields))

    return _make


class ScriptedExecutor:
    """Call executor that plays back a script of outcomes.

    Script entries:
        True / False   -> CallResult(success=...)
        Exception      -> raised
        float          -> sleep that many seconds, then succeed
    When the script runs out, every further call succeeds.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[int] = []

    async def execute_scheduled_call(self, schedule: Schedule) -> CallResult:
        self.calls.append(schedule.id)
        step = self.script.pop(0) if self.script else True
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, bool):
            return CallResult(success=step, message="ok" if step else "upstream returned 502")
        await asyncio.sleep(step)
        return CallResult(success=True, message="slow ok")


@pytest.fixture
def scripted() -> type[ScriptedExecutor]:
    return ScriptedExecutor
