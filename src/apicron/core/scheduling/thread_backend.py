"""
Periodic tick threads for the ``beat`` command.

``beat`` needs two cadences that never wait on each other: a dispatcher
tick every minute and a monitor sweep every five minutes. Each runs on its
own ``TickThread``, a daemon thread with a private event loop that awaits
the tick coroutine on a fixed schedule.

Ticks are spaced from their start times on the monotonic clock, so a slow
tick shortens the following wait instead of drifting the cadence. A tick
that raises is logged and counted; the thread keeps going.

Examples:
    >>> dispatch = TickThread("dispatcher", engine.dispatcher.tick, 60.0)
    >>> dispatch.start()
    >>> dispatch.health().to_dict()["consecutive_failures"]
    0
    >>> dispatch.stop()

Tags:
    beat, tick, thread, cadence
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from apicron.core.clock import Clock, SystemClock
from apicron.core.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


@dataclass
class TickHealth:
    """Snapshot of one tick thread."""

    name: str
    running: bool
    interval_seconds: float
    ticks: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None
    last_result: dict[str, Any] | None = None

    @property
    def healthy(self) -> bool:
        return self.running and self.consecutive_failures == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "ticks": self.ticks,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class TickThread:
    """Awaits ``tick`` every ``interval_seconds`` on a daemon thread."""

    def __init__(
        self,
        name: str,
        tick: TickCallback,
        interval_seconds: float,
        *,
        run_immediately: bool = True,
        clock: Clock | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.tick = tick
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.clock = clock or SystemClock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self._health = TickHealth(name=name, running=False, interval_seconds=interval_seconds)

    def start(self) -> None:
        if self.is_running:
            logger.warning("tick_thread_already_running", tick=self.name)
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"apicron-{self.name}")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop and wait up to ``timeout`` for the current tick."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("tick_thread_still_running", tick=self.name)
        else:
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def health(self) -> TickHealth:
        with self._state_lock:
            snapshot = TickHealth(**vars(self._health))
        snapshot.running = self.is_running
        return snapshot

    def _loop(self) -> None:
        logger.info("tick_thread_started", tick=self.name, interval_seconds=self.interval_seconds)
        next_at = time.monotonic() + (0.0 if self.run_immediately else self.interval_seconds)
        with asyncio.Runner() as runner:
            while not self._stop.wait(max(next_at - time.monotonic(), 0.0)):
                next_at += self.interval_seconds
                self._tick_once(runner)
                # Skip ticks missed while a slow one was running
                while next_at < time.monotonic():
                    next_at += self.interval_seconds
        logger.info("tick_thread_stopped", tick=self.name)

    def _tick_once(self, runner: asyncio.Runner) -> None:
        started = self.clock.now()
        try:
            result = runner.run(self.tick())
        except Exception as e:
            with self._state_lock:
                self._health.ticks += 1
                self._health.last_tick = started
                self._health.failures += 1
                self._health.consecutive_failures += 1
                self._health.last_error = f"{type(e).__name__}: {e}"
                failures = self._health.consecutive_failures
            logger.exception("tick_failed", tick=self.name, consecutive_failures=failures)
            return

        summary = result.to_dict() if hasattr(result, "to_dict") else None
        with self._state_lock:
            self._health.ticks += 1
            self._health.last_tick = started
            self._health.consecutive_failures = 0
            self._health.last_result = summary


__all__ = ["TickCallback", "TickHealth", "TickThread"]
