"""
Monitor - the five-minute health sweep.

Manifesto:
    The monitor only reads. Each sweep runs four independent checks and
    records what it saw; a query that fails inside one check is logged and
    noted on the report, and the remaining checks still run.

    - **failed**: schedules in ``failed`` whose row changed in the window
    - **stuck**: enabled schedules with ``failure_count >= threshold``,
      whatever their status
    - **stale**: dispatch-eligible schedules never run, or not run within
      the freshness window
    - **summary**: fleet counts, logged and published as gauges

Architecture:
    ::

        sweep(now)
          ├─ check_failed(now)   ─┐
          ├─ check_stuck()        │  each wrapped: error ─► report.errors[check]
          ├─ check_stale(now)     │
          └─ summarize()         ─┘
                 │
                 ▼
          MonitorReport ──► log events + SchedulerMetrics gauges

Examples:
    >>> monitor = Monitor(store, clock=clock)
    >>> report = await monitor.sweep()
    >>> [s.last_run for s in report.stale]
    ['Never']

Tags:
    monitor, health-check, stale, stuck, observability

Doc-Types:
    - API Reference
    - Operations Guide
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from apicron.core.clock import Clock, SystemClock
from apicron.core.logging import get_logger
from apicron.core.scheduling.repository import ScheduleCounts, ScheduleStore
from apicron.core.timestamps import format_ago
from apicron.observability.metrics import SchedulerMetrics


@dataclass(frozen=True)
class StuckSchedule:
    schedule_id: int
    failure_count: int
    status: str

    @property
    def message(self) -> str:
        return f"Schedule ID {self.schedule_id} has {self.failure_count} failures and may need attention"


@dataclass(frozen=True)
class StaleSchedule:
    schedule_id: int
    last_executed_at: datetime | None
    last_run: str

    @property
    def message(self) -> str:
        return f"Schedule ID {self.schedule_id} hasn't run recently (last: {self.last_run})"


@dataclass
class MonitorReport:
    """Everything one sweep observed."""

    checked_at: datetime
    failed_recent: int | None = None
    stuck: list[StuckSchedule] = field(default_factory=list)
    stale: list[StaleSchedule] = field(default_factory=list)
    summary: ScheduleCounts | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return not self.errors and not self.failed_recent and not self.stuck and not self.stale

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "failed_recent": self.failed_recent,
            "stuck": [
                {"schedule_id": s.schedule_id, "failure_count": s.failure_count, "status": s.status}
                for s in self.stuck
            ],
            "stale": [
                {
                    "schedule_id": s.schedule_id,
                    "last_executed_at": s.last_executed_at.isoformat() if s.last_executed_at else None,
                    "last_run": s.last_run,
                }
                for s in self.stale
            ],
            "summary": self.summary.to_dict() if self.summary else None,
            "errors": dict(self.errors),
        }


class Monitor:
    """Read-only sweeps over the schedule store."""

    def __init__(
        self,
        store: ScheduleStore,
        *,
        clock: Clock | None = None,
        logger: Any = None,
        metrics: SchedulerMetrics | None = None,
        stuck_threshold: int = 5,
        stale_after: timedelta = timedelta(hours=24),
        failed_window: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.log = logger or get_logger(__name__)
        self.metrics = metrics or SchedulerMetrics()
        self.stuck_threshold = stuck_threshold
        self.stale_after = stale_after
        self.failed_window = failed_window

    async def sweep(self, now: datetime | None = None) -> MonitorReport:
        """Run every check once; a failing check never stops the others."""
        now = now or self.clock.now()
        report = MonitorReport(checked_at=now)

        report.failed_recent = self._guard(report, "failed", lambda: self.check_failed(now))
        report.stuck = self._guard(report, "stuck", self.check_stuck) or []
        report.stale = self._guard(report, "stale", lambda: self.check_stale(now)) or []
        report.summary = self._guard(report, "summary", self.summarize)

        self.log.info(
            "monitor_sweep_completed",
            healthy=report.healthy,
            failed_recent=report.failed_recent,
            stuck=len(report.stuck),
            stale=len(report.stale),
            failed_checks=sorted(report.errors),
        )
        return report

    # === Checks ===

    def check_failed(self, now: datetime) -> int:
        """Count schedules that entered ``failed`` within the window."""
        count = self.store.count_failed_since(now - self.failed_window)
        self.metrics.failed_recent.set(count)
        hours = int(self.failed_window.total_seconds() // 3600)
        if count > 0:
            self.log.warning(
                "monitor_failed_schedules",
                count=count,
                window_hours=hours,
                message=f"Monitor found {count} failed schedules in the last {hours} hours",
            )
        else:
            self.log.info("monitor_no_failed_schedules", window_hours=hours)
        return count

    def check_stuck(self) -> list[StuckSchedule]:
        """Enabled schedules at or above the failure threshold."""
        stuck = [
            StuckSchedule(s.id, s.failure_count, s.status.value)
            for s in self.store.list_stuck(self.stuck_threshold)
        ]
        self.metrics.stuck.set(len(stuck))
        for item in stuck:
            self.log.warning(
                "monitor_stuck_schedule",
                schedule_id=item.schedule_id,
                failure_count=item.failure_count,
                status=item.status,
                message=item.message,
            )
        return stuck

    def check_stale(self, now: datetime) -> list[StaleSchedule]:
        """Eligible schedules with no run inside the freshness window."""
        stale = [
            StaleSchedule(s.id, s.last_executed_at, format_ago(s.last_executed_at, now))
            for s in self.store.list_stale(now - self.stale_after)
        ]
        self.metrics.stale.set(len(stale))
        for item in stale:
            self.log.warning(
                "monitor_stale_schedule",
                schedule_id=item.schedule_id,
                last_run=item.last_run,
                message=item.message,
            )
        return stale

    def summarize(self) -> ScheduleCounts:
        """Fleet counts as a structured log event and gauges."""
        counts = self.store.count_summary()
        for state, value in counts.to_dict().items():
            self.metrics.schedules.labels(state=state).set(value)
        self.log.info(
            "schedule_monitoring_summary",
            **counts.to_dict(),
            message=(
                f"Schedule monitoring summary: Total={counts.total}, Active={counts.enabled}, "
                f"Paused={counts.disabled}, Failed={counts.failed}"
            ),
        )
        return counts

    def _guard(self, report: MonitorReport, check: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            report.errors[check] = str(e)
            self.log.error("monitor_check_failed", check=check, error=str(e), exc_info=True)
            return None


__all__ = ["Monitor", "MonitorReport", "StaleSchedule", "StuckSchedule"]
