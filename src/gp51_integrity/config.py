"""Configuration management for the GP51 data integrity service.

Loads settings from environment variables and .env files using pydantic-settings.
Provides a cached singleton via get_config().
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IntegrityConfig(BaseSettings):
    """Application configuration sourced from environment variables."""

    # Local store (Supabase / PostgREST)
    supabase_url: str = Field(..., alias="SUPABASE_URL")
    supabase_service_key: str = Field(..., alias="SUPABASE_SERVICE_KEY")
    store_timeout: int = Field(30, alias="STORE_TIMEOUT")
    store_max_retries: int = Field(3, alias="STORE_MAX_RETRIES")

    # Remote tracking platform
    gp51_base_url: str = Field("https://www.gps51.com/webapi", alias="GP51_BASE_URL")
    gp51_username: str = Field("", alias="GP51_USERNAME")
    gp51_password: str = Field("", alias="GP51_PASSWORD")
    gp51_timeout: int = Field(30, alias="GP51_TIMEOUT")
    gp51_max_retries: int = Field(2, alias="GP51_MAX_RETRIES")

    # Business thresholds used by the consistency checks
    max_vehicles_per_user: int = Field(100, alias="MAX_VEHICLES_PER_USER")
    recent_activity_hours: int = Field(24, alias="RECENT_ACTIVITY_HOURS")
    imported_user_flag: str = Field("is_gp51_imported", alias="IMPORTED_USER_FLAG")
    metadata_batch_size: int = Field(50, alias="METADATA_BATCH_SIZE")
    sample_size: int = Field(5, alias="SAMPLE_SIZE")

    # Background schedules
    monitoring_interval_seconds: int = Field(300, alias="MONITORING_INTERVAL_SECONDS")
    reconciliation_interval_hours: float = Field(6, alias="RECONCILIATION_INTERVAL_HOURS")
    position_poll_seconds: int = Field(30, alias="POSITION_POLL_SECONDS")
    job_retention_hours: int = Field(24, alias="JOB_RETENTION_HOURS")

    # Position alert thresholds
    overspeed_limit_kmh: float = Field(120, alias="OVERSPEED_LIMIT_KMH")
    low_battery_percent: float = Field(20, alias="LOW_BATTERY_PERCENT")
    temperature_min_c: float = Field(-20, alias="TEMPERATURE_MIN_C")
    temperature_max_c: float = Field(70, alias="TEMPERATURE_MAX_C")
    offline_alert_hours: int = Field(24, alias="OFFLINE_ALERT_HOURS")

    report_storage_path: str = Field(".gp51-integrity", alias="REPORT_STORAGE_PATH")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_config() -> IntegrityConfig:
    """Return a cached singleton of IntegrityConfig."""
    return IntegrityConfig()
