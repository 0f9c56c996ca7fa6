"""
Cron expression normalization and evaluation.

Manifesto:
    Due-ness is a pure function of (expression, instant, timezone). The
    evaluator holds no state beyond a clock used for zone conversion, so
    the same inputs always give the same answer and ticks can be replayed.

    Expressions are evaluated at minute granularity. A 6-field expression
    whose seconds field is literally ``0`` is reduced to its 5-field form;
    any other seconds value cannot be honored by a minute tick and is
    rejected instead of being silently truncated.

Architecture:
    ::

        normalize("0 */5 * * * *") ──► "*/5 * * * *"
                                            │
        instant (UTC) ── in_zone(tz) ──► local wall clock
                                            │
                                  croniter(expr, local)
                                   ├─ is_due:   minute matches?
                                   └─ next_run: first match strictly after

Examples:
    >>> evaluator = CronEvaluator()
    >>> evaluator.normalize("0 30 9 * * *")
    '30 9 * * *'
    >>> evaluator.is_due("*/5 * * * *", datetime(2026, 1, 1, 12, 5, tzinfo=UTC), "UTC")
    True
    >>> evaluator.next_run("*/5 * * * *", datetime(2026, 1, 1, 12, 5, tzinfo=UTC), "UTC")
    datetime.datetime(2026, 1, 1, 12, 10, tzinfo=datetime.timezone.utc)

Tags:
    cron, croniter, timezone, scheduling, pure-function

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter

from apicron.core.clock import Clock, SystemClock, resolve_zone
from apicron.core.errors import InvalidExpression

CRON_FIELDS = 5
CRON_FIELDS_WITH_SECONDS = 6


class CronEvaluator:
    """Normalizes cron strings and answers due/next-run questions."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def normalize(self, expression: str) -> str:
        """Reduce a zero-seconds 6-field expression to 5 fields.

        Other expressions pass through unchanged.

        Raises:
            InvalidExpression: 6 fields with a non-zero seconds field.
        """
        fields = expression.split()
        if len(fields) != CRON_FIELDS_WITH_SECONDS:
            return expression
        if fields[0] != "0":
            raise InvalidExpression(
                expression,
                reason=f"seconds field {fields[0]!r} is not reducible to minute granularity",
            )
        return " ".join(fields[1:])

    def validate(self, expression: str) -> str:
        """Normalize and check that the result is a valid 5-field expression."""
        normalized = self.normalize(expression)
        if len(normalized.split()) != CRON_FIELDS:
            raise InvalidExpression(expression, reason="expected 5 or 6 fields")
        if not croniter.is_valid(normalized):
            raise InvalidExpression(expression)
        return normalized

    def is_due(self, expression: str, instant: datetime, tz: str | ZoneInfo = "UTC") -> bool:
        """True if the wall-clock minute containing ``instant`` in ``tz`` matches."""
        minute = self._local(instant, tz).replace(second=0, microsecond=0)
        candidate = self._iter(expression, minute - timedelta(seconds=1)).get_next(datetime)
        return candidate == minute

    def next_run(self, expression: str, instant: datetime, tz: str | ZoneInfo = "UTC") -> datetime:
        """Next matching instant strictly after ``instant``, returned in UTC."""
        local = self._local(instant, tz)
        return self._iter(expression, local).get_next(datetime).astimezone(UTC)

    def describe(self, expression: str) -> str:
        """Short human summary used by listings."""
        normalized = self.validate(expression)
        minute, hour, dom, month, dow = normalized.split()
        if normalized == "* * * * *":
            return "Every minute"
        if minute.startswith("*/") and (hour, dom, month, dow) == ("*", "*", "*", "*"):
            return f"Every {minute[2:]} minutes"
        if minute.isdigit() and hour.isdigit() and (dom, month, dow) == ("*", "*", "*"):
            return f"Daily at {int(hour):02d}:{int(minute):02d}"
        return f"Cron: {normalized}"

    # -- internals ---------------------------------------------------------

    def _local(self, instant: datetime, tz: str | ZoneInfo) -> datetime:
        return self._clock.in_zone(instant, resolve_zone(tz))

    def _iter(self, expression: str, start: datetime) -> croniter:
        normalized = self.validate(expression)
        try:
            return croniter(normalized, start)
        except (ValueError, KeyError) as e:
            raise InvalidExpression(expression, cause=e) from e


__all__ = ["CronEvaluator"]
