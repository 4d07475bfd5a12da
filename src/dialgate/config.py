"""
Application configuration with environment-driven settings.

Every knob of the dispatch core lives here. Component-level config objects
(limiter, pool, guard, retry policy, dispatcher) are derived from ``Settings``
through their ``from_settings`` constructors.
"""

import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Dispatch core settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DIALGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "dialgate"
    log_level: str = "INFO"
    timezone: str = Field(
        default="America/New_York",
        description="Default IANA time zone for day rotation and retry tiers",
    )

    # Throughput limiter
    rate_limiter_enabled: bool = True
    max_attempts_per_second: float = Field(
        default=5.0,
        gt=0,
        description="Global attempts-per-second ceiling",
    )
    per_target_interval_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Minimum spacing between two attempts on the same target",
    )

    # Resource pool
    pool_name: str = "default"
    resource_pool: str = Field(
        default="",
        description="Comma-separated list of originating numbers",
    )
    cooldown_threshold: int = Field(default=5, ge=1)
    cooldown_minutes: float = Field(default=5.0, gt=0)
    rolling_window_hours: float = Field(default=48.0, gt=0)
    affinity_expiry_days: int = Field(default=30, ge=1)
    min_sample_size: int = Field(default=10, ge=1)

    # Admission guard
    admission_enabled: bool = True
    max_daily_attempts_per_target: int = Field(default=3, ge=1)
    duplicate_window_minutes: float = Field(default=10.0, ge=0)
    transfer_safety_minutes: float = Field(default=30.0, ge=0)
    stale_attempt_minutes: float = Field(default=90.0, gt=0)
    allow_different_lead_ids: bool = False
    never_recontact_dispositions: str = Field(
        default="TRANSFERRED,SALE,NOT_INTERESTED",
        description="Terminal dispositions after which a target is never contacted again",
    )
    transfer_dispositions: str = "TRANSFERRED"
    allow_voicemail_retry: bool = True
    allow_no_answer_retry: bool = True

    # Retry scheduler
    max_attempts: int = Field(default=8, ge=1)
    success_dispositions: str = "TRANSFERRED,SALE"
    progressive_intervals: str = Field(
        default="0,0,5,10,30,60,120",
        description="Per-attempt minutes, used when a target has no creation time",
    )
    same_day_interval_minutes: int = Field(default=45, ge=0)
    next_day_interval_minutes: int = Field(default=120, ge=0)
    older_interval_minutes: int = Field(default=240, ge=0)
    min_interval_minutes: float = Field(default=2.0, gt=0)
    retention_days: int = Field(default=30, ge=1)

    # Dispatcher
    tick_interval_seconds: float = Field(default=300.0, ge=1)
    queue_push_ahead_minutes: float = Field(default=5.0, gt=0)
    blocked_recheck_minutes: float = Field(default=60.0, gt=0)

    # Persistence
    storage_backend: Literal["json", "sqlalchemy", "memory"] = "json"
    data_dir: str = Field(default="data", description="Directory for JSON snapshots")
    database_url: str = Field(
        default="sqlite+aiosqlite:///data/dialgate.db",
        description="SQLAlchemy async URL used by the sqlalchemy backend",
    )
    persist_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("progressive_intervals")
    @classmethod
    def validate_progressive_intervals(cls, v: str) -> str:
        """Reject non-numeric or negative entries early."""
        for item in _split_csv(v):
            if not item.isdigit():
                raise ValueError(f"progressive_intervals entries must be non-negative integers, got {item!r}")
        return v

    @field_validator(
        "success_dispositions",
        "never_recontact_dispositions",
        "transfer_dispositions",
    )
    @classmethod
    def normalize_dispositions(cls, v: str) -> str:
        return ",".join(item.upper() for item in _split_csv(v))

    @property
    def resource_pool_list(self) -> list[str]:
        """Parse the pool into a de-duplicated list, order preserved."""
        return list(dict.fromkeys(_split_csv(self.resource_pool)))

    @property
    def success_dispositions_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.success_dispositions))

    @property
    def never_recontact_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.never_recontact_dispositions))

    @property
    def transfer_dispositions_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.transfer_dispositions))

    @property
    def progressive_intervals_list(self) -> list[int]:
        return [int(item) for item in _split_csv(self.progressive_intervals)]


def _get_settings_cached() -> Settings:
    return Settings()


def get_settings() -> Settings:
    # Tests patch the environment between cases, so never hand out a frozen copy there.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return Settings()
    return _get_settings_cached()
