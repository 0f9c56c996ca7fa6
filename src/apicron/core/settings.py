"""
Process settings loaded from the environment.

Manifesto:
    - **Pydantic validation:** bad intervals, an empty backoff table or an
      unknown default timezone fail at startup, not mid-tick
    - **Environment-driven:** ``APICRON_*`` variables and an optional ``.env``
    - **Sensible defaults:** one-minute dispatch, five-minute monitor,
      3 tries with a 60/300/900 second backoff table, 300 second timeout

Examples:
    >>> settings = ApicronSettings(execution_tries=5)
    >>> settings.execution_backoff
    [60, 300, 900]

    Environment override::

        APICRON_DEFAULT_TIMEZONE=Asia/Jakarta apicron process

Tags:
    settings, configuration, pydantic, environment

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApicronSettings(BaseSettings):
    """Settings shared by the dispatcher, worker and monitor processes.

    Fields
    ──────
    database                  : SQLite store path
    default_timezone          : Zone used when a schedule has none
    dispatch_interval_seconds : Dispatcher tick cadence
    monitor_interval_seconds  : Monitor sweep cadence
    execution_tries           : Total attempts per dispatch (worker policy)
    execution_backoff         : Delay table between attempts, in seconds
    execution_timeout_seconds : Hard wall-clock budget per attempt
    retry_policy              : "worker" (fixed table) or "schedule" (per-row)
    call_executor             : "module:attribute" of the call collaborator
    """

    model_config = SettingsConfigDict(
        env_prefix="APICRON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database: Path = Field(
        default_factory=lambda: Path.home() / ".apicron" / "apicron.db",
        description="SQLite database holding schedules, leases and tasks",
    )

    # ── Scheduling ───────────────────────────────────────────────
    default_timezone: str = "UTC"
    dispatch_interval_seconds: float = Field(default=60.0, gt=0)
    monitor_interval_seconds: float = Field(default=300.0, gt=0)

    # ── Execution ────────────────────────────────────────────────
    execution_tries: int = Field(default=3, ge=1)
    execution_backoff: list[int] = Field(default_factory=lambda: [60, 300, 900], min_length=1)
    execution_timeout_seconds: float = Field(default=300.0, gt=0)
    retry_policy: Literal["worker", "schedule"] = "worker"
    lease_grace_seconds: int = Field(default=30, ge=0)
    call_executor: str | None = None

    # ── Worker pool ──────────────────────────────────────────────
    worker_concurrency: int = Field(default=4, ge=1)
    worker_poll_seconds: float = Field(default=2.0, gt=0)
    task_visibility_seconds: int = Field(default=600, gt=0)

    # ── Monitor thresholds ───────────────────────────────────────
    stuck_failure_threshold: int = Field(default=5, ge=1)
    stale_after_hours: int = Field(default=24, ge=1)
    failed_window_hours: int = Field(default=24, ge=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("default_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value

    @field_validator("execution_backoff")
    @classmethod
    def _non_negative_backoff(cls, value: list[int]) -> list[int]:
        if any(v < 0 for v in value):
            raise ValueError("backoff delays must be >= 0")
        return value

    @property
    def lease_ttl_seconds(self) -> int:
        """Lease lifetime covering one attempt plus grace."""
        return int(self.execution_timeout_seconds) + self.lease_grace_seconds


@lru_cache(maxsize=1)
def get_settings() -> ApicronSettings:
    """Load settings once per process."""
    return ApicronSettings()


__all__ = ["ApicronSettings", "get_settings"]
