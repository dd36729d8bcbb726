"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables prefixed with CERT_STORE_
  - Fall back to a .env file in the working directory
  - Validate types and constraints at startup

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the
env var CERT_STORE_LOCK__TIMEOUT_SECONDS maps to lock.timeout_seconds,
CERT_STORE_BUNDLE__URL maps to bundle.url, etc.

Command-line overrides never mutate a loaded instance: `with_overrides` returns
a new, re-validated settings object.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cert_store.adapters.bundle_source import DEFAULT_BUNDLE_URL, MAX_DEGRADATION_PERCENT, MIN_CERT_COUNT

DEFAULT_ROOT = Path("~/.cert-store")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LockSettings(BaseModel):
    """Metadata lock acquisition limits."""

    timeout_seconds: float = Field(default=30.0, gt=0, description="Give up acquiring the lock after this long")
    poll_interval_seconds: float = Field(default=0.1, gt=0, description="Delay between acquisition attempts")


class BundleSettings(BaseModel):
    """Upstream bundle source and the sanity limits a download must pass."""

    url: str = Field(default=DEFAULT_BUNDLE_URL, description="Where `bundle update` downloads from")
    min_cert_count: int = Field(default=MIN_CERT_COUNT, ge=1)
    max_degradation_percent: float = Field(default=MAX_DEGRADATION_PERCENT, ge=0, le=100)


class SchedulerSettings(BaseModel):
    """
    Scheduler configuration for `bundle watch`, a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    Examples:
      "0 3 * * *"    — daily at 03:00 (default)
      "0 3 * * 1"    — every Monday at 03:00
      "0 */6 * * *"  — every 6 hours
    """

    cron: str = Field(
        default="0 3 * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )
    run_on_startup: bool = Field(default=True)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (CERT_STORE_*)
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="CERT_STORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    root: Path = Field(default=DEFAULT_ROOT, validate_default=True, description="Store root directory")
    log_level: str = Field(default="WARNING")
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    http_timeout_seconds: float = Field(default=60.0, gt=0)

    lock: LockSettings = Field(default_factory=lambda: LockSettings())
    bundle: BundleSettings = Field(default_factory=lambda: BundleSettings())
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())

    @field_validator("root")
    @classmethod
    def expand_root(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {value!r}")
        return level

    def with_overrides(self, **overrides: Any) -> AppSettings:
        """A validated copy with the non-None `overrides` applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return AppSettings.model_validate({**self.model_dump(), **values})
