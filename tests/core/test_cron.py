"""Tests for CronEvaluator: normalization, due-ness and next run."""

from datetime import UTC, datetime

import pytest

from apicron.core.errors import InvalidExpression, InvalidTimezone
from apicron.core.scheduling import CronEvaluator


@pytest.fixture
def evaluator(clock):
    return CronEvaluator(clock)


class TestNormalize:
    """Six-field reduction and pass-through."""

    def test_zero_seconds_reduced_to_five_fields(self, evaluator):
        assert evaluator.normalize("0 30 9 * * *") == "30 9 * * *"

    def test_nonzero_seconds_rejected(self, evaluator):
        with pytest.raises(InvalidExpression) as exc_info:
            evaluator.normalize("15 30 9 * * *")
        assert exc_info.value.expression == "15 30 9 * * *"

    def test_step_seconds_rejected(self, evaluator):
        with pytest.raises(InvalidExpression):
            evaluator.normalize("*/10 * * * * *")

    def test_five_fields_unchanged(self, evaluator):
        assert evaluator.normalize("*/5 * * * *") == "*/5 * * * *"

    @pytest.mark.parametrize(
        "expression",
        ["0 */5 * * * *", "*/5 * * * *", "0 30 9 * * 1-5", "15 2 1 * *", "bogus", "* * *"],
    )
    def test_idempotent(self, evaluator, expression):
        once = evaluator.normalize(expression)
        assert evaluator.normalize(once) == once


class TestValidate:
    """Field count and syntax checks after normalization."""

    @pytest.mark.parametrize("expression", ["* * * *", "0 0 0 * * * *", "not a cron", "61 * * * *"])
    def test_invalid_rejected(self, evaluator, expression):
        with pytest.raises(InvalidExpression):
            evaluator.validate(expression)

    def test_valid_returns_normalized(self, evaluator):
        assert evaluator.validate("0 0 12 * * *") == "0 12 * * *"


class TestScenarioFiveMinuteCron:
    """``0 */5 * * * *`` at 12:05:00 UTC."""

    def test_normalized(self, evaluator):
        assert evaluator.normalize("0 */5 * * * *") == "*/5 * * * *"

    def test_is_due(self, evaluator):
        assert evaluator.is_due("0 */5 * * * *", datetime(2026, 1, 1, 12, 5, tzinfo=UTC), "UTC") is True

    def test_next_run(self, evaluator):
        assert evaluator.next_run("0 */5 * * * *", datetime(2026, 1, 1, 12, 5, tzinfo=UTC), "UTC") == datetime(
            2026, 1, 1, 12, 10, tzinfo=UTC
        )


class TestIsDue:
    """Minute-granularity matching in the schedule's zone."""

    def test_seconds_within_minute_ignored(self, evaluator):
        assert evaluator.is_due("*/5 * * * *", datetime(2026, 1, 1, 12, 5, 42, tzinfo=UTC)) is True

    def test_not_due_next_minute(self, evaluator):
        assert evaluator.is_due("*/5 * * * *", datetime(2026, 1, 1, 12, 6, tzinfo=UTC)) is False

    def test_every_minute_always_due(self, evaluator):
        assert evaluator.is_due("* * * * *", datetime(2026, 3, 7, 23, 59, 59, tzinfo=UTC)) is True

    def test_evaluated_in_schedule_timezone(self, evaluator):
        # 09:00 in New York on 1 Jan is 14:00 UTC
        assert evaluator.is_due("0 9 * * *", datetime(2026, 1, 1, 14, 0, tzinfo=UTC), "America/New_York") is True
        assert evaluator.is_due("0 9 * * *", datetime(2026, 1, 1, 9, 0, tzinfo=UTC), "America/New_York") is False

    def test_naive_instant_treated_as_utc(self, evaluator):
        assert evaluator.is_due("5 12 * * *", datetime(2026, 1, 1, 12, 5)) is True

    def test_deterministic(self, evaluator):
        instant = datetime(2026, 1, 1, 12, 5, 30, tzinfo=UTC)
        results = {evaluator.is_due("*/5 * * * *", instant, "Europe/Berlin") for _ in range(20)}
        assert results == {True}

    def test_invalid_expression_raises(self, evaluator):
        with pytest.raises(InvalidExpression):
            evaluator.is_due("every five minutes", datetime(2026, 1, 1, 12, 5, tzinfo=UTC))

    def test_unknown_timezone_raises(self, evaluator):
        with pytest.raises(InvalidTimezone) as exc_info:
            evaluator.is_due("* * * * *", datetime(2026, 1, 1, 12, 5, tzinfo=UTC), "Mars/Olympus_Mons")
        assert isinstance(exc_info.value, InvalidExpression)
        assert exc_info.value.timezone == "Mars/Olympus_Mons"


class TestNextRun:
    """Next match strictly after the instant, returned in UTC."""

    def test_strictly_after(self, evaluator):
        assert evaluator.next_run("*/5 * * * *", datetime(2026, 1, 1, 12, 7, tzinfo=UTC)) == datetime(
            2026, 1, 1, 12, 10, tzinfo=UTC
        )

    def test_returns_utc_for_zoned_schedule(self, evaluator):
        result = evaluator.next_run("0 9 * * *", datetime(2026, 1, 1, 12, 0, tzinfo=UTC), "America/New_York")
        assert result == datetime(2026, 1, 1, 14, 0, tzinfo=UTC)
        assert result.utcoffset().total_seconds() == 0


class TestDescribe:
    """Short summaries for listings."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("* * * * *", "Every minute"),
            ("*/15 * * * *", "Every 15 minutes"),
            ("0 30 9 * * *", "Daily at 09:30"),
            ("0 9 * * 1-5", "Cron: 0 9 * * 1-5"),
        ],
    )
    def test_describe(self, evaluator, expression, expected):
        assert evaluator.describe(expression) == expected
