"""Application settings loaded from environment variables and .env files."""

import logging
import math
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SCAN_DIRECTORY_JOB_TYPE = "scan.directory"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./tunescan.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")
    pool_pre_ping: bool = Field(default=True, description="Ping connections before use")
    pool_size: int = Field(default=5, description="Connection pool size (PostgreSQL)")
    max_overflow: int = Field(default=10, description="Pool overflow (PostgreSQL)")
    pool_timeout: int = Field(default=30, description="Pool checkout timeout seconds")
    pool_recycle: int = Field(default=3600, description="Recycle connections after N seconds")

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.url.startswith("sqlite")

    def get_sqlite_path(self) -> Path | None:
        """Get the SQLite database file path, or None for non-file databases."""
        if not self.is_sqlite:
            return None
        _, _, raw_path = self.url.partition(":///")
        if not raw_path or raw_path.startswith(":memory:"):
            return None
        return Path(raw_path.split("?", 1)[0])


# Hey future me - these are the knobs the operator turns when scans eat the box!
# Env names are UNPREFIXED (MAX_CONCURRENT_JOBS, QUEUE_MAX_LENGTH, ...). Durations are in
# seconds, but the millisecond names older deployments set (MAX_JOB_RUNTIME_MS,
# JOB_POLL_INTERVAL_MS) are still honored when the seconds variant is absent. Every numeric knob falls back to its default when the env
# value is garbage or <= 0 - a typo in docker-compose must never produce a zero-sized lease or
# a queue that accepts nothing.
class JobSettings(BaseSettings):
    """Background job queue, worker and scanner limits."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    max_concurrent_jobs: int = Field(default=2, description="Global concurrent jobs per worker")
    max_concurrent_scan_jobs: int = Field(
        default=1, description="Concurrent scan.directory jobs per worker"
    )
    per_type_concurrency: dict[str, int] = Field(
        default_factory=dict,
        description="Per job type concurrency overrides (JSON map)",
    )
    max_db_batch_size: int = Field(default=500, description="Upper bound for batch flush size")
    max_fs_concurrency: int = Field(
        default=8, description="Concurrent filesystem operations per process"
    )
    max_scan_depth: int = Field(default=32, description="Deepest directory level scanned")
    max_files_per_scan: int = Field(default=200_000, description="Hard cap of files per scan")
    max_job_runtime_seconds: float = Field(
        default=30 * 60, description="Runtime budget of a single job"
    )
    queue_max_length: int = Field(default=1000, description="Max queued jobs before backpressure")
    queue_max_inflight: int = Field(default=8, description="Max in-flight jobs per worker")
    job_lease_duration_seconds: int = Field(default=45, description="Lease duration")
    job_poll_interval_seconds: float = Field(default=0.75, description="Idle poll interval")
    job_retry_backoff_cap_seconds: int = Field(default=60, description="Retry backoff cap")
    job_default_max_attempts: int = Field(default=3, description="Default retry ceiling")
    max_job_runtime_ms: float | None = Field(
        default=None, description="Runtime budget in milliseconds (legacy name)"
    )
    job_poll_interval_ms: float | None = Field(
        default=None, description="Idle poll interval in milliseconds (legacy name)"
    )

    @field_validator(
        "max_concurrent_jobs",
        "max_concurrent_scan_jobs",
        "max_db_batch_size",
        "max_fs_concurrency",
        "max_scan_depth",
        "max_files_per_scan",
        "max_job_runtime_seconds",
        "queue_max_length",
        "queue_max_inflight",
        "job_lease_duration_seconds",
        "job_poll_interval_seconds",
        "job_retry_backoff_cap_seconds",
        "job_default_max_attempts",
        mode="before",
    )
    @classmethod
    def _fallback_to_default(cls, value: Any, info: ValidationInfo) -> Any:
        """Replace non-numeric or non-positive values with the field default."""
        default = cls.model_fields[info.field_name].default
        try:
            number = float(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid value {value!r} for {info.field_name}, using default {default}"
            )
            return default
        if not math.isfinite(number) or number <= 0:
            logger.warning(
                f"Non-positive value {value!r} for {info.field_name}, using default {default}"
            )
            return default
        return value

    @field_validator("max_job_runtime_ms", "job_poll_interval_ms", mode="before")
    @classmethod
    def _ignore_invalid_millis(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = math.nan
        if not math.isfinite(number) or number <= 0:
            logger.warning(f"Ignoring invalid value {value!r} for {info.field_name}")
            return None
        return number

    @model_validator(mode="after")
    def _apply_millisecond_aliases(self) -> "JobSettings":
        """Convert *_MS values unless the seconds variant was given explicitly."""
        pairs = (
            ("max_job_runtime_ms", "max_job_runtime_seconds"),
            ("job_poll_interval_ms", "job_poll_interval_seconds"),
        )
        for millis_field, seconds_field in pairs:
            millis = getattr(self, millis_field)
            if millis is not None and seconds_field not in self.model_fields_set:
                setattr(self, seconds_field, millis / 1000)
        return self

    @field_validator("per_type_concurrency")
    @classmethod
    def _drop_invalid_overrides(cls, value: dict[str, int]) -> dict[str, int]:
        """Ignore per-type overrides that are not positive."""
        return {job_type: limit for job_type, limit in value.items() if limit > 0}

    @property
    def heartbeat_interval_seconds(self) -> float:
        """Heartbeat interval, always well inside the lease duration."""
        return self.job_lease_duration_seconds / 3

    def concurrency_for(self, job_type: str) -> int:
        """Get the concurrency ceiling for a job type."""
        if job_type in self.per_type_concurrency:
            return self.per_type_concurrency[job_type]
        if job_type == SCAN_DIRECTORY_JOB_TYPE:
            return self.max_concurrent_scan_jobs
        return 1


class Settings(BaseSettings):
    """Top-level tunescan settings.

    Build ONE instance at process start (see get_settings) and hand it to the
    components that need it. Nothing in the package reads settings globally.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUNESCAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="tunescan", description="Application name used in logs")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON logs")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)


def get_settings() -> Settings:
    """Load settings from the environment.

    Call once during startup and pass the result around.
    """
    return Settings()
