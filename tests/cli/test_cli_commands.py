"""Tests for the ``apicron`` CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from apicron import __version__
from apicron.cli.app import app
from apicron.core.connection import SqliteConnection
from apicron.core.models import ScheduleStatus
from apicron.core.schema import create_tables
from apicron.core.scheduling import ScheduleCreate, ScheduleStore

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "apicron.db"
    monkeypatch.setenv("APICRON_DATABASE", str(path))
    monkeypatch.setenv("APICRON_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("APICRON_CALL_EXECUTOR", raising=False)
    return path


@pytest.fixture
def seeded(db_path):
    """One every-minute cron schedule (id 1) that has never run."""
    conn = SqliteConnection(db_path)
    create_tables(conn)
    ScheduleStore(conn).create(ScheduleCreate(schedule_type="cron", cron_expression="* * * * *"))
    conn.close()
    return db_path


def _reload(db_path, schedule_id=1):
    conn = SqliteConnection(db_path)
    try:
        return ScheduleStore(conn).get(schedule_id)
    finally:
        conn.close()


def _task_count(db_path):
    conn = SqliteConnection(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM execution_tasks").fetchone()[0]
    finally:
        conn.close()


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"apicron {__version__}" in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "process" in result.output
        assert "monitor" in result.output


class TestDbInit:
    def test_creates_schema(self, db_path):
        result = runner.invoke(app, ["db", "init"])
        assert result.exit_code == 0
        assert "Initialized 3 tables" in result.output
        assert db_path.exists()

    def test_database_option(self, db_path, tmp_path):
        other = tmp_path / "nested" / "other.db"
        result = runner.invoke(app, ["db", "init", "--database", str(other)])
        assert result.exit_code == 0
        assert other.exists()


class TestScheduleCommands:
    """Listing and administrator actions."""

    def test_list_empty(self, db_path):
        result = runner.invoke(app, ["schedule", "list"])
        assert result.exit_code == 0
        assert "No items." in result.output

    def test_list_json(self, seeded):
        result = runner.invoke(app, ["schedule", "list", "--json"])
        assert result.exit_code == 0
        assert '"cron_expression": "* * * * *"' in result.output

    def test_show(self, seeded):
        result = runner.invoke(app, ["schedule", "show", "1", "--json"])
        assert result.exit_code == 0
        assert '"status": "active"' in result.output

    def test_show_unknown(self, seeded):
        result = runner.invoke(app, ["schedule", "show", "99"])
        assert result.exit_code == 1
        assert "Schedule 99 not found" in result.output

    def test_pause_and_resume(self, seeded):
        result = runner.invoke(app, ["schedule", "pause", "1"])
        assert result.exit_code == 0
        assert _reload(seeded).status == ScheduleStatus.PAUSED

        result = runner.invoke(app, ["schedule", "resume", "1"])
        assert result.exit_code == 0
        assert _reload(seeded).status == ScheduleStatus.ACTIVE

    def test_reset_failures_and_reactivate(self, seeded):
        conn = SqliteConnection(seeded)
        conn.execute("UPDATE schedules SET failure_count = 7, status = 'failed' WHERE id = 1")
        conn.commit()
        conn.close()

        assert runner.invoke(app, ["schedule", "reset-failures", "1"]).exit_code == 0
        assert runner.invoke(app, ["schedule", "reactivate", "1"]).exit_code == 0
        schedule = _reload(seeded)
        assert schedule.failure_count == 0
        assert schedule.status == ScheduleStatus.ACTIVE

    def test_admin_unknown_id(self, seeded):
        result = runner.invoke(app, ["schedule", "pause", "42"])
        assert result.exit_code == 1

    def test_trigger(self, seeded):
        result = runner.invoke(app, ["schedule", "trigger", "1", "--json"])
        assert result.exit_code == 0
        assert '"schedule_id": 1' in result.output
        assert _task_count(seeded) == 1


class TestProcess:
    """One dispatcher tick."""

    def test_dispatches_due_schedule(self, seeded):
        result = runner.invoke(app, ["process", "--json"])
        assert result.exit_code == 0
        assert '"dispatched": 1' in result.output
        assert _task_count(seeded) == 1

    def test_second_run_skips_in_flight(self, seeded):
        runner.invoke(app, ["process"])
        result = runner.invoke(app, ["process", "--json"])
        assert '"skipped_in_flight": 1' in result.output
        assert _task_count(seeded) == 1

    def test_empty_database(self, db_path):
        result = runner.invoke(app, ["process"])
        assert result.exit_code == 0
        assert "considered" in result.output


class TestMonitor:
    """One monitor sweep."""

    def test_reports_stale_schedule(self, seeded):
        result = runner.invoke(app, ["monitor"])
        assert result.exit_code == 0
        assert "Schedule ID 1 hasn't run recently (last: Never)" in result.output

    def test_json(self, seeded):
        result = runner.invoke(app, ["monitor", "--json"])
        assert result.exit_code == 0
        assert '"last_run": "Never"' in result.output

    def test_metrics_export(self, seeded):
        result = runner.invoke(app, ["monitor", "--metrics"])
        assert result.exit_code == 0
        assert 'apicron_schedules{state="total"} 1.0' in result.output

    def test_healthy_empty_fleet(self, db_path):
        result = runner.invoke(app, ["monitor"])
        assert result.exit_code == 0
        assert "All schedules healthy" in result.output


class TestWork:
    """Worker pool command."""

    def test_requires_call_executor(self, seeded):
        result = runner.invoke(app, ["work", "--once"])
        assert result.exit_code == 1
        assert "no call executor configured" in result.output

    def test_once_settles_runnable_tasks(self, seeded, monkeypatch):
        # json.dumps cannot serialize a Schedule, so the attempt fails
        monkeypatch.setenv("APICRON_CALL_EXECUTOR", "json:dumps")
        runner.invoke(app, ["schedule", "trigger", "1"])

        result = runner.invoke(app, ["work", "--once", "--json"])

        assert result.exit_code == 0
        assert '"outcome": "retry_scheduled"' in result.output
        assert _reload(seeded).failure_count == 1
