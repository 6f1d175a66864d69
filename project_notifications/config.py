"""Application configuration settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = ".env"
ENV_FILE_ENCODING = "utf-8"


class Settings(BaseSettings):
    """Application configuration values loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=ENV_FILE,
        env_file_encoding=ENV_FILE_ENCODING,
        extra="ignore",
        populate_by_name=True,
    )

    database_url: str = Field(
        default="sqlite:///./notifications.db",
        description="Database connection URL used by SQLAlchemy to connect to the DB",
        min_length=1,
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level applied when the service starts",
    )

    batch_size: int = Field(
        default=20,
        gt=0,
        description="Maximum number of outbox rows leased per dispatch cycle",
        validation_alias="NOTIFICATIONS_BATCH_SIZE",
    )
    lease_duration_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How long a leased outbox row stays hidden from other workers",
        validation_alias="NOTIFICATIONS_LEASE_DURATION_SECONDS",
    )
    idle_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Pause between polls when the outbox is empty",
        validation_alias="NOTIFICATIONS_IDLE_DELAY_SECONDS",
    )
    error_delay_seconds: float = Field(
        default=15.0,
        ge=0,
        description="Pause after a dispatch cycle failed as a whole",
        validation_alias="NOTIFICATIONS_ERROR_DELAY_SECONDS",
    )
    dispatcher_enabled: bool = Field(
        default=True,
        description="Start the dispatcher and retention loops with the application",
        validation_alias="NOTIFICATIONS_DISPATCHER_ENABLED",
    )

    retention_sweep_interval_seconds: float = Field(
        default=3600.0,
        description="Cadence of the retention sweeper",
        validation_alias="NOTIFICATIONS_RETENTION_SWEEP_INTERVAL_SECONDS",
    )
    retention_max_age_days: float | None = Field(
        default=None,
        description="Delete notifications older than this many days",
        validation_alias="NOTIFICATIONS_RETENTION_MAX_AGE_DAYS",
    )
    retention_max_per_user: int | None = Field(
        default=None,
        description="Keep at most this many notifications per recipient",
        validation_alias="NOTIFICATIONS_RETENTION_MAX_PER_USER",
    )

    @model_validator(mode="after")
    def _validate_log_level(self) -> "Settings":
        self.log_level = (self.log_level or "INFO").strip().upper() or "INFO"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the settings cache to force reloading from the environment."""

    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "reset_settings_cache"]
