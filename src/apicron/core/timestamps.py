"""
Timestamp serialization for the store.

Instants are persisted as UTC ISO-8601 strings with fixed microsecond
precision (``2026-01-01T12:05:00.000000+00:00``) so string comparison in
SQL orders the same way as the instants themselves.
"""

from datetime import UTC, datetime


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert an instant to its stored form. Naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if s is None or s == "":
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


_UNITS = (
    ("year", 365 * 86400),
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


def format_ago(then: datetime | None, now: datetime, never: str = "Never") -> str:
    """Render the distance from ``then`` to ``now`` for humans ("3 hours ago")."""
    if then is None:
        return never
    seconds = int((now - then).total_seconds())
    if seconds < 0:
        return "in the future"
    if seconds < 1:
        return "just now"
    for unit, size in _UNITS:
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"
