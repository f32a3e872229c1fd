"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/docqueue.db"

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Security
    api_tokens: dict[str, str] = {}  # bearer token -> "owner_id:plan"
    cron_secret: str | None = None  # Guards the internal worker/sweep endpoints

    # Rate limiting (Redis when configured, in-memory otherwise)
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "docqueue:"
    rate_limit_backend: str = "redis"  # "redis" or "memory"
    upload_rate_limit: int = 10
    upload_rate_window_seconds: int = 60
    process_rate_limit: int = 5
    process_rate_window_seconds: int = 60
    usage_rate_limit: int = 3
    usage_rate_window_seconds: int = 60

    # Quotas (pages)
    standard_weekly_limit: int = 10
    elevated_monthly_limit: int = 100

    # Admission
    max_concurrent_jobs: int = 4  # System-wide cap on jobs in "processing"
    average_job_seconds: int = 30  # ETA per queue position
    default_max_retries: int = 3

    # Retention
    job_retention_hours: int = 24
    operation_retention_hours: int = 24
    stale_operation_hours: int = 2
    history_retention_days: int = 90

    # Storage
    blob_storage_dir: str = "data/blobs"
    max_upload_bytes: int = 20 * 1024 * 1024
    scratch_dir: str = "/tmp"

    # Scheduler intervals (queue poll in seconds, the rest in minutes)
    queue_poll_seconds: int = 10
    queue_drain_batch: int = 10
    sweep_interval: int = 60
    rollover_interval: int = 360  # 6 hours
    scheduler_timezone: str = "UTC"
    scheduler_max_workers: int = 2


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
