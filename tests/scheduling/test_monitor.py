"""Tests for the Monitor health sweep."""

from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from apicron.core.errors import StoreUnavailable
from apicron.core.scheduling import Monitor


@pytest.fixture
def monitor(store, clock, metrics):
    return Monitor(store, clock=clock, metrics=metrics)


class TestStuckCheck:
    """Enabled schedules at or above five failures, whatever their status."""

    @pytest.mark.parametrize("status", ["active", "failed", "inactive"])
    def test_five_failures_listed_regardless_of_status(self, monitor, make_schedule, status):
        schedule = make_schedule(failure_count=5, status=status)
        [item] = monitor.check_stuck()
        assert item.schedule_id == schedule.id
        assert item.status == status
        assert item.message == f"Schedule ID {schedule.id} has 5 failures and may need attention"

    def test_below_threshold_not_listed(self, monitor, make_schedule):
        make_schedule(failure_count=4)
        assert monitor.check_stuck() == []

    def test_disabled_not_listed(self, monitor, make_schedule):
        make_schedule(failure_count=12, enabled=False, status="paused")
        assert monitor.check_stuck() == []

    def test_custom_threshold(self, store, clock, metrics, make_schedule):
        make_schedule(failure_count=2)
        assert len(Monitor(store, clock=clock, metrics=metrics, stuck_threshold=2).check_stuck()) == 1


class TestStaleCheck:
    """Eligible schedules with no run in the last 24 hours."""

    def test_never_run_rendered_as_never(self, monitor, make_schedule, clock):
        schedule = make_schedule(last_executed_at=None)
        [item] = monitor.check_stale(clock.now())
        assert item.schedule_id == schedule.id
        assert item.last_run == "Never"
        assert item.message == f"Schedule ID {schedule.id} hasn't run recently (last: Never)"

    def test_old_run_listed_with_distance(self, monitor, make_schedule, clock):
        make_schedule(last_executed_at=clock.now() - timedelta(hours=30))
        [item] = monitor.check_stale(clock.now())
        assert item.last_run == "1 day ago"

    def test_recent_run_not_listed(self, monitor, make_schedule, clock):
        make_schedule(last_executed_at=clock.now() - timedelta(hours=23))
        assert monitor.check_stale(clock.now()) == []

    def test_ineligible_not_listed(self, monitor, make_schedule, clock):
        make_schedule(enabled=False, status="paused")
        make_schedule(status="failed")
        make_schedule(schedule_type="manual", cron_expression=None)
        assert monitor.check_stale(clock.now()) == []


class TestFailedCheck:
    """Schedules that entered failed inside the window."""

    def test_counts_recent_failures_only(self, monitor, store, make_schedule, clock):
        store.mark_failed(make_schedule().id)
        store.mark_failed(make_schedule().id)
        store.mark_failed(make_schedule().id, now=clock.now() - timedelta(hours=25))

        with capture_logs() as logs:
            count = monitor.check_failed(clock.now())

        assert count == 2
        [event] = [e for e in logs if e["event"] == "monitor_failed_schedules"]
        assert event["message"] == "Monitor found 2 failed schedules in the last 24 hours"
        assert event["log_level"] == "warning"

    def test_none_failed(self, monitor, clock):
        with capture_logs() as logs:
            assert monitor.check_failed(clock.now()) == 0
        assert [e["event"] for e in logs] == ["monitor_no_failed_schedules"]


class TestSummary:
    """Fleet counts as a log event and gauges."""

    def test_summary_message_and_gauges(self, monitor, make_schedule, store, metrics):
        make_schedule()
        make_schedule(enabled=False, status="paused")
        store.mark_failed(make_schedule().id)

        with capture_logs() as logs:
            counts = monitor.summarize()

        assert (counts.total, counts.enabled, counts.disabled, counts.failed) == (3, 2, 1, 1)
        [event] = [e for e in logs if e["event"] == "schedule_monitoring_summary"]
        assert event["message"] == "Schedule monitoring summary: Total=3, Active=2, Paused=1, Failed=1"
        assert metrics.schedules.labels(state="total").value == 3
        assert metrics.schedules.labels(state="failed").value == 1


class TestSweep:
    """All checks in one pass, each isolated from the others."""

    @pytest.mark.asyncio
    async def test_healthy_fleet(self, monitor, make_schedule, store, clock):
        schedule = make_schedule()
        store.mark_attempt_started(schedule.id, clock.now() - timedelta(minutes=5))

        report = await monitor.sweep()
        assert report.healthy is True
        assert report.failed_recent == 0
        assert report.summary.total == 1
        assert report.to_dict()["healthy"] is True

    @pytest.mark.asyncio
    async def test_findings_reported(self, monitor, make_schedule, metrics):
        make_schedule(failure_count=5)
        report = await monitor.sweep()

        assert report.healthy is False
        assert len(report.stuck) == 1
        assert len(report.stale) == 1
        assert metrics.stuck.value == 1
        assert metrics.stale.value == 1
        assert report.to_dict()["stale"][0]["last_run"] == "Never"

    @pytest.mark.asyncio
    async def test_failing_check_does_not_stop_others(self, monitor, store, make_schedule, monkeypatch):
        make_schedule(failure_count=6)

        def broken(threshold=5):
            raise StoreUnavailable("list_stuck")

        monkeypatch.setattr(store, "list_stuck", broken)
        with capture_logs() as logs:
            report = await monitor.sweep()

        assert set(report.errors) == {"stuck"}
        assert report.stuck == []
        assert len(report.stale) == 1
        assert report.summary.total == 1
        assert report.healthy is False
        assert any(e["event"] == "monitor_check_failed" and e["check"] == "stuck" for e in logs)

    @pytest.mark.asyncio
    async def test_store_down_reports_every_check(self, monitor, conn):
        conn.close()
        report = await monitor.sweep()
        assert set(report.errors) == {"failed", "stuck", "stale", "summary"}

    @pytest.mark.asyncio
    async def test_injected_logger_receives_events(self, store, clock, metrics, make_schedule):
        events = []

        class RecordingLogger:
            def __getattr__(self, level):
                return lambda event, **kw: events.append((level, event, kw))

        make_schedule()
        await Monitor(store, clock=clock, metrics=metrics, logger=RecordingLogger()).sweep()
        names = [event for _, event, _ in events]
        assert "monitor_stale_schedule" in names
        assert names[-1] == "monitor_sweep_completed"

    @pytest.mark.asyncio
    async def test_monitor_never_writes(self, monitor, make_schedule, store):
        schedule = make_schedule(failure_count=7)
        before = store.get(schedule.id)
        await monitor.sweep()
        assert store.get(schedule.id) == before
