"""Retry policies for failed execution attempts.

A policy answers two questions after attempt *n* (1-based) fails:

- ``should_retry(n, schedule)``: is there budget for attempt *n+1*?
- ``delay_for(n, schedule)``: how long until attempt *n+1* may run?

The worker does not sleep on the answer; it re-submits the task to the
queue with that delay.

Policies:
    - ``BackoffTable``: fixed total attempts and a fixed delay table
      (default 3 tries, 60/300/900 seconds). The delay after attempt *n*
      is ``table[n-1]``; the last entry repeats past the end.
    - ``ScheduleRetryPolicy``: reads ``max_retries`` (retries after the
      first attempt), ``retry_delay`` and ``retry_delay_unit`` from each
      schedule row.

Example:
    >>> policy = BackoffTable(tries=3, delays=(60, 300, 900))
    >>> [policy.delay_for(n) for n in (1, 2)]
    [60.0, 300.0]
    >>> policy.should_retry(3)
    False
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from apicron.core.models import Schedule


class RetryPolicy(ABC):
    """Abstract base for retry policies."""

    @abstractmethod
    def max_attempts(self, schedule: Schedule | None = None) -> int:
        """Total attempts allowed for one dispatch."""
        ...

    @abstractmethod
    def delay_for(self, attempt: int, schedule: Schedule | None = None) -> float:
        """Seconds to wait before the attempt after ``attempt``.

        Args:
            attempt: 1-based number of the attempt that just failed
        """
        ...

    def should_retry(self, attempt: int, schedule: Schedule | None = None) -> bool:
        """True if another attempt is allowed after ``attempt`` failed."""
        return attempt < self.max_attempts(schedule)


@dataclass
class BackoffTable(RetryPolicy):
    """Fixed attempt budget with a table of increasing delays.

    Attributes:
        tries: Total attempts per dispatch (first attempt included)
        delays: Delay in seconds before attempt 2, 3, ...
    """

    tries: int = 3
    delays: Sequence[float] = field(default=(60, 300, 900))

    def __post_init__(self) -> None:
        if self.tries < 1:
            raise ValueError(f"tries must be >= 1, got {self.tries}")
        if not self.delays:
            raise ValueError("delays must not be empty")
        self.delays = tuple(float(d) for d in self.delays)

    def max_attempts(self, schedule: Schedule | None = None) -> int:
        return self.tries

    def delay_for(self, attempt: int, schedule: Schedule | None = None) -> float:
        index = min(max(attempt, 1), len(self.delays)) - 1
        return self.delays[index]


@dataclass
class ScheduleRetryPolicy(RetryPolicy):
    """Per-schedule budget: ``max_retries + 1`` attempts, constant spacing.

    Falls back to ``default`` when no schedule is given.
    """

    default: RetryPolicy = field(default_factory=BackoffTable)

    def max_attempts(self, schedule: Schedule | None = None) -> int:
        if schedule is None:
            return self.default.max_attempts()
        return max(schedule.max_retries, 0) + 1

    def delay_for(self, attempt: int, schedule: Schedule | None = None) -> float:
        if schedule is None:
            return self.default.delay_for(attempt)
        return schedule.retry_delay_unit.to_seconds(max(schedule.retry_delay, 0))


def policy_from_settings(settings) -> RetryPolicy:
    """Build the configured policy from ``ApicronSettings``."""
    table = BackoffTable(tries=settings.execution_tries, delays=settings.execution_backoff)
    if settings.retry_policy == "schedule":
        return ScheduleRetryPolicy(default=table)
    return table


__all__ = [
    "BackoffTable",
    "RetryPolicy",
    "ScheduleRetryPolicy",
    "policy_from_settings",
]
