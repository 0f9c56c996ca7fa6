"""
SQLite adapter for the ``Connection`` protocol.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from apicron.core.logging import get_logger
from apicron.core.protocols import Connection

logger = get_logger(__name__)


class SqliteConnection:
    """Adapter: ``sqlite3.Connection`` → ``Connection`` protocol.

    One connection is shared by the dispatcher, worker pool and monitor in a
    single process (``check_same_thread=False``). Single statements are
    serialized with a lock; multi-statement units of work go through
    ``transaction()``, which holds that lock from the first statement until
    commit or rollback so another thread cannot interleave with them.
    """

    def __init__(self, path: str | Path = ":memory:", *, row_factory: Any = sqlite3.Row) -> None:
        path = str(path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = row_factory
        self._lock = threading.RLock()

    # -- Connection protocol -----------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> Any:
        with self._lock:
            return self._conn.execute(sql, params)

    def executescript(self, script: str) -> None:
        with self._lock:
            self._conn.executescript(script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the connection for one unit of work; roll back if it raises."""
        with self._lock:
            try:
                yield
            except Exception:
                _rollback_quietly(self)
                raise

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self._conn!r})"


def _rollback_quietly(conn: Connection) -> None:
    try:
        conn.rollback()
    except Exception as e:  # noqa: BLE001
        logger.debug("rollback_failed", error=str(e))


@contextmanager
def atomic(conn: Connection) -> Iterator[None]:
    """Run a unit of work on ``conn``, rolling back if it raises.

    Uses the connection's own ``transaction()`` when it has one, so reads
    (including ``fetchall``) and the final commit happen under its lock.
    """
    transaction = getattr(conn, "transaction", None)
    if transaction is not None:
        with transaction():
            yield
        return
    try:
        yield
    except Exception:
        _rollback_quietly(conn)
        raise


__all__ = ["SqliteConnection", "atomic"]
