"""
Database connection protocol.

The store, lease manager and SQL task queue only need a small synchronous
DB-API subset, so any driver (``sqlite3``, a psycopg adapter) that offers
these methods can back them.

Tags:
    protocol, connection, database
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Minimal synchronous connection interface.

    ``execute`` returns a cursor-like object exposing ``rowcount``,
    ``fetchone`` and ``fetchall``.
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters."""
        ...

    def commit(self) -> None:
        """Commit transaction."""
        ...

    def rollback(self) -> None:
        """Rollback transaction."""
        ...


__all__ = ["Connection"]
