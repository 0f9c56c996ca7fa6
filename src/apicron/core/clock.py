"""
Injectable clock for scheduling decisions.

Every component that asks "what time is it" takes a ``Clock`` so tests can
pin time and replay ticks deterministically.

Manifesto:
    Cron evaluation is a pure function of (expression, instant, timezone).
    Reading ``datetime.now()`` deep inside the dispatcher makes that
    function impure and untestable, so the instant always comes from an
    injected clock and timezone conversion goes through the same object.

Examples:
    >>> clock = FrozenClock(datetime(2026, 1, 1, 12, 5, tzinfo=UTC))
    >>> clock.now().minute
    5
    >>> clock.in_zone(clock.now(), "Asia/Jakarta").hour
    19

Tags:
    clock, time, timezone, testing, determinism

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apicron.core.errors import InvalidTimezone


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def resolve_zone(tz: str | ZoneInfo) -> ZoneInfo:
    """Resolve an IANA zone name, raising ``InvalidTimezone`` if unknown."""
    if isinstance(tz, ZoneInfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimezone(tz, cause=e) from e


@runtime_checkable
class Clock(Protocol):
    """Source of the current instant plus timezone conversion."""

    def now(self) -> datetime:
        """Return the current instant as an aware UTC datetime."""
        ...

    def in_zone(self, instant: datetime, tz: str | ZoneInfo) -> datetime:
        """Return ``instant`` localized into ``tz``."""
        ...


class SystemClock:
    """Wall clock backed by the system time."""

    def now(self) -> datetime:
        return utc_now()

    def in_zone(self, instant: datetime, tz: str | ZoneInfo) -> datetime:
        return _as_aware(instant).astimezone(resolve_zone(tz))


class FrozenClock:
    """Clock pinned to a fixed instant; advance it explicitly.

    Used by tests and by replay tooling.
    """

    def __init__(self, instant: datetime) -> None:
        self._instant = _as_aware(instant)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def in_zone(self, instant: datetime, tz: str | ZoneInfo) -> datetime:
        return _as_aware(instant).astimezone(resolve_zone(tz))

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._instant = _as_aware(instant)

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        """Move the clock forward and return the new instant."""
        with self._lock:
            self._instant = self._instant + timedelta(seconds=seconds, **kwargs)
            return self._instant


def _as_aware(instant: datetime) -> datetime:
    # Naive datetimes are treated as UTC
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant


__all__ = ["Clock", "FrozenClock", "SystemClock", "resolve_zone", "utc_now"]
