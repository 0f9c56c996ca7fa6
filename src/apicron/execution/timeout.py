"""Wall-clock timeouts for execution attempts.

An attempt that runs past its budget is cancelled and reported as
``TimeoutExpired``; the worker counts it exactly like a collaborator
failure.

Example:
    >>> result = await run_with_timeout_async(call(schedule), 300.0, operation="schedule:7")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when an operation exceeds its deadline.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the operation ran before being interrupted
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation
        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg)


async def run_with_timeout_async(
    coro: Awaitable[T],
    timeout_seconds: float,
    operation: str = "operation",
) -> T:
    """Run an awaitable with a timeout, cancelling it on expiry.

    Raises:
        TimeoutExpired: If execution exceeds timeout
        ValueError: If ``timeout_seconds`` is not positive
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except TimeoutError:
        elapsed = time.monotonic() - start
        raise TimeoutExpired(
            timeout=timeout_seconds,
            elapsed=elapsed,
            operation=operation,
        ) from None


__all__ = ["TimeoutExpired", "run_with_timeout_async"]
