"""
Domain models for schedules and execution tasks.

``Schedule`` mirrors one row of the ``schedules`` table. Its execution
fields (``execution_count``, ``failure_count``, ``status``,
``last_executed_at``) are owned by the scheduling core; everything else is
written by the management layer that creates schedules.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ScheduleType(str, Enum):
    MANUAL = "manual"
    CRON = "cron"


class ScheduleStatus(str, Enum):
    """Lifecycle status. Only ``FAILED`` is set automatically."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"
    FAILED = "failed"


class RetryDelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"

    def to_seconds(self, value: float) -> float:
        return value * {"seconds": 1, "minutes": 60, "hours": 3600}[self.value]


@dataclass(frozen=True)
class ScheduleReferences:
    """Opaque ids handed through to the call-execution collaborator."""

    api_source_id: int | None = None
    api_request_id: int | None = None
    api_extract_id: int | None = None
    destination_id: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "api_source_id": self.api_source_id,
            "api_request_id": self.api_request_id,
            "api_extract_id": self.api_extract_id,
            "destination_id": self.destination_id,
        }


@dataclass
class Schedule:
    """Schedule definition row (``schedules``)."""

    id: int
    schedule_type: ScheduleType = ScheduleType.MANUAL
    enabled: bool = True
    cron_expression: str | None = None
    cron_description: str | None = None
    timezone: str | None = None
    max_retries: int = 3
    retry_delay: int = 5
    retry_delay_unit: RetryDelayUnit = RetryDelayUnit.MINUTES
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    references: ScheduleReferences = field(default_factory=ScheduleReferences)
    last_executed_at: datetime | None = None
    next_execution_at: datetime | None = None
    execution_count: int = 0
    failure_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_dispatch_eligible(self) -> bool:
        """enabled ∧ status=active ∧ type=cron ∧ expression present."""
        return (
            self.enabled
            and self.status == ScheduleStatus.ACTIVE
            and self.schedule_type == ScheduleType.CRON
            and self.cron_expression is not None
        )

    def effective_timezone(self, default: str) -> str:
        return self.timezone or default

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_type": self.schedule_type.value,
            "enabled": self.enabled,
            "cron_expression": self.cron_expression,
            "cron_description": self.cron_description,
            "timezone": self.timezone,
            "status": self.status.value,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "retry_delay_unit": self.retry_delay_unit.value,
            **self.references.to_dict(),
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "next_execution_at": self.next_execution_at.isoformat() if self.next_execution_at else None,
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
        }


@dataclass(frozen=True)
class ExecutionTask:
    """One queued execution attempt for a schedule.

    ``attempt`` is 1-based; a retry is a new task with ``attempt + 1`` and a
    later ``not_before``.
    """

    task_id: str
    schedule_id: int
    attempt: int
    not_before: datetime
    enqueued_at: datetime


@dataclass(frozen=True)
class CallResult:
    """Outcome reported by the call-execution collaborator."""

    success: bool
    message: str = ""
    data: Any = None

    @classmethod
    def coerce(cls, value: CallResult | Mapping[str, Any]) -> CallResult:
        """Accept either a ``CallResult`` or a ``{"success", "message"}`` mapping."""
        if isinstance(value, CallResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                success=bool(value.get("success", False)),
                message=str(value.get("message", "")),
                data=value.get("data"),
            )
        raise TypeError(f"Unsupported call result type: {type(value).__name__}")


__all__ = [
    "CallResult",
    "ExecutionTask",
    "RetryDelayUnit",
    "Schedule",
    "ScheduleReferences",
    "ScheduleStatus",
    "ScheduleType",
]
