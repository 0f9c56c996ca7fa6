"""
Structured error types for the scheduling core.

Every failure the scheduler can observe maps onto one of a small set of
typed errors. Each carries a category, a retry hint and an optional chained
cause, so log lines and CLI output say what went wrong without re-parsing
messages.

Manifesto:
    - **Typed taxonomy:** callers catch ``InvalidExpression`` or
      ``StoreUnavailable``, never a bare ``Exception``
    - **Isolation by type:** per-schedule errors are caught per schedule,
      per-check errors per check; nothing aborts a whole tick
    - **Error chaining:** driver and collaborator exceptions are preserved
      as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                      ApicronError                         │
        │         (category, retryable, cause, to_dict)             │
        ├──────────────────────────────────────────────────────────┤
        │  InvalidExpression      ExecutionFailure   StoreUnavailable│
        │  (VALIDATION)           (EXECUTION)        (STORAGE)       │
        │       │                      │                             │
        │  InvalidTimezone        TimeoutExceeded                    │
        │                                                            │
        │  ScheduleNotFound       ConfigError                        │
        │  (NOT_FOUND)            (CONFIG)                           │
        └──────────────────────────────────────────────────────────┘

Examples:
    >>> err = InvalidExpression("15 30 9 * * *", reason="non-zero seconds field")
    >>> err.retryable
    False
    >>> err.to_dict()["category"]
    'VALIDATION'

Tags:
    error-handling, exception-hierarchy, retry-logic, scheduling

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing log lines and alerts."""

    VALIDATION = "VALIDATION"    # Bad cron expression or timezone
    EXECUTION = "EXECUTION"      # Collaborator failure or timeout
    STORAGE = "STORAGE"          # Store, lease or queue I/O
    NOT_FOUND = "NOT_FOUND"      # Unknown schedule id
    CONFIG = "CONFIG"            # Bad settings or collaborator path
    INTERNAL = "INTERNAL"


class ApicronError(Exception):
    """Base class for all scheduler errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CRON / TIMEZONE
# =============================================================================


class InvalidExpression(ApicronError):
    """Cron expression does not parse after normalization.

    The dispatcher skips the schedule for the current tick and carries on.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        expression: str | None,
        *,
        reason: str = "unparseable cron expression",
        cause: BaseException | None = None,
        message: str | None = None,
    ):
        self.expression = expression
        self.reason = reason
        super().__init__(message or f"Invalid cron expression {expression!r}: {reason}", cause=cause)


class InvalidTimezone(InvalidExpression):
    """Schedule timezone is not a known IANA zone."""

    def __init__(self, timezone: str, *, cause: BaseException | None = None):
        self.timezone = timezone
        super().__init__(
            None,
            reason="unknown timezone",
            cause=cause,
            message=f"Unknown timezone {timezone!r}",
        )


# =============================================================================
# EXECUTION
# =============================================================================


class ExecutionFailure(ApicronError):
    """The call-execution collaborator reported failure or raised."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        schedule_id: int | None = None,
        attempt: int | None = None,
        cause: BaseException | None = None,
    ):
        self.schedule_id = schedule_id
        self.attempt = attempt
        super().__init__(message, cause=cause)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.schedule_id is not None:
            result["schedule_id"] = self.schedule_id
        if self.attempt is not None:
            result["attempt"] = self.attempt
        return result


class TimeoutExceeded(ExecutionFailure):
    """Execution ran past its wall-clock budget. Counted as a failure."""

    def __init__(
        self,
        timeout: float,
        *,
        schedule_id: int | None = None,
        attempt: int | None = None,
        cause: BaseException | None = None,
    ):
        self.timeout = timeout
        super().__init__(
            f"Execution exceeded {timeout:g}s timeout",
            schedule_id=schedule_id,
            attempt=attempt,
            cause=cause,
        )


# =============================================================================
# STORAGE / LOOKUP / CONFIG
# =============================================================================


class StoreUnavailable(ApicronError):
    """Persisted-store I/O failed. The affected schedule or check is skipped."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True

    def __init__(self, operation: str, *, cause: BaseException | None = None):
        self.operation = operation
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store unavailable during {operation}{detail}", cause=cause)


class ScheduleNotFound(ApicronError):
    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, schedule_id: int):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} not found")


class ConfigError(ApicronError):
    default_category = ErrorCategory.CONFIG


__all__ = [
    "ApicronError",
    "ConfigError",
    "ErrorCategory",
    "ExecutionFailure",
    "InvalidExpression",
    "InvalidTimezone",
    "ScheduleNotFound",
    "StoreUnavailable",
    "TimeoutExceeded",
]
