"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from leasequeue.constants import (
    DEFAULT_CLAIM_RETRIES,
    DEFAULT_LEASE_DURATION_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REAPER_INTERVAL_SECONDS,
)


class Settings(BaseSettings):
    """Queue settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./leasequeue.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_echo: bool = False

    # Queue defaults
    queue_default_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    lease_duration_seconds: float = Field(default=DEFAULT_LEASE_DURATION_SECONDS, gt=0)
    claim_retries: int = Field(default=DEFAULT_CLAIM_RETRIES, ge=0)

    # Worker Configuration
    worker_pool_size: int = Field(default=4, ge=1)
    worker_poll_interval_seconds: float = Field(default=1.0, gt=0)
    worker_execution_timeout_seconds: float | None = None
    worker_heartbeat_interval_seconds: float | None = None
    worker_shutdown_grace_seconds: float = 10.0
    worker_storage_backoff_seconds: float = 5.0

    # Retry backoff (0 disables it: failed jobs are claimable immediately)
    retry_backoff_base_seconds: float = Field(default=0.0, ge=0)
    retry_backoff_max_seconds: float = Field(default=300.0, ge=0)

    # Reaper Configuration
    reaper_interval_seconds: float = Field(default=DEFAULT_REAPER_INTERVAL_SECONDS, gt=0)

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "leasequeue"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
