"""
SQL dialect helpers for portable queries.

Only the handful of constructs the scheduler issues differ between
backends: placeholder style and ``INSERT ... ignore on conflict``.
"""

from __future__ import annotations

from typing import Protocol


class Dialect(Protocol):
    """Backend-specific SQL fragments."""

    @property
    def name(self) -> str: ...

    def placeholder(self, index: int) -> str: ...

    def placeholders(self, count: int) -> str: ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str: ...


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders."""

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"


class PostgreSQLDialect:
    """PostgreSQL dialect: ``%s`` placeholders (psycopg)."""

    @property
    def name(self) -> str:
        return "postgresql"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"


__all__ = ["Dialect", "PostgreSQLDialect", "SQLiteDialect"]
