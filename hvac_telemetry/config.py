"""
Service configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every tunable of the ingestion path, the rollup/retention jobs and the
scheduler lives here; no hardcoded URLs or credentials.

CHANGELOG:
- 2026-10-12: Add scheduler intervals and ingest retry settings
- 2026-10-05: Initial creation

TODO:
- None
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Telemetry core configuration.

    Attributes:
        database_url: SQLAlchemy async URL (postgresql+asyncpg or
            sqlite+aiosqlite).
        redis_url: Redis URL for the current-state cache. Empty disables
            the cache.
        cache_ttl_s: TTL of cached current-state snapshots.
        max_readings_per_request: Max readings accepted by one ingest call.
        max_request_bytes: Max ingest request body size.
        raw_retention_days: Age after which raw partitions may be dropped.
        hourly_retention_days: Age after which hourly rollups are deleted.
        hourly_lookback_hours: Completed hours re-rolled on every run to
            pick up late readings.
        daily_lookback_days: Completed days re-rolled on every run.
        partition_months_ahead: Months of partitions created ahead of need.
        ingest_concurrency: Max readings processed concurrently per batch.
        ingest_retry_attempts: Attempts for a reading whose partition
            cannot be materialized.
        ingest_retry_base_s: Initial backoff between those attempts.
        ingest_retry_max_s: Backoff cap.
        scheduler_enabled: Run background jobs inside the API process.
        *_interval_s: Period of each background job.
        log_level: Root log level.
    """

    database_url: str
    redis_url: str = ""
    cache_ttl_s: int = 5
    max_readings_per_request: int = 1000
    max_request_bytes: int = 1048576

    raw_retention_days: int = 30
    hourly_retention_days: int = 90
    hourly_lookback_hours: int = 3
    daily_lookback_days: int = 3
    partition_months_ahead: int = 1

    ingest_concurrency: int = 16
    ingest_retry_attempts: int = 3
    ingest_retry_base_s: float = 0.5
    ingest_retry_max_s: float = 8.0

    scheduler_enabled: bool = False
    partition_interval_s: float = 86400.0
    rollup_hourly_interval_s: float = 3600.0
    rollup_daily_interval_s: float = 86400.0
    retention_interval_s: float = 86400.0
    repair_interval_s: float = 60.0

    log_level: str = "INFO"

    @field_validator("raw_retention_days", "hourly_retention_days")
    @classmethod
    def retention_must_be_positive(cls, v: int) -> int:
        """Validate retention windows are at least one day."""
        if v < 1:
            raise ValueError("Retention windows must be >= 1 day")
        return v

    @field_validator("max_readings_per_request")
    @classmethod
    def batch_limit_must_be_valid(cls, v: int) -> int:
        """Validate batch limit is between 1 and 10000."""
        if v < 1 or v > 10000:
            raise ValueError("MAX_READINGS_PER_REQUEST must be >= 1 and <= 10000")
        return v

    @field_validator("ingest_concurrency", "ingest_retry_attempts")
    @classmethod
    def must_be_at_least_one(cls, v: int) -> int:
        """Validate counters that need at least one slot/attempt."""
        if v < 1:
            raise ValueError("Value must be >= 1")
        return v

    @field_validator("partition_months_ahead", "hourly_lookback_hours", "daily_lookback_days")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        """Validate look-ahead/lookback counts are non-negative."""
        if v < 0:
            raise ValueError("Value must be >= 0")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance."""
    return Settings()
