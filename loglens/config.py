"""
Configuration management using pydantic-settings.
All settings loaded from environment variables prefixed with LOGLENS_.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from loglens.models.enums import Granularity, Severity


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LOGLENS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # SLA
    sla_threshold_minutes: float = Field(
        default=15, gt=0, description="Global SLA threshold (fallback for all severities)"
    )
    sla_threshold_critical_minutes: Optional[float] = Field(
        default=5, gt=0, description="SLA threshold for CRITICAL incidents"
    )
    sla_threshold_error_minutes: Optional[float] = Field(
        default=15, gt=0, description="SLA threshold for ERROR incidents"
    )

    # Auto-resolution
    auto_resolve_threshold_minutes: float = Field(
        default=60, gt=0, description="Inactivity before an incident is auto-resolved"
    )
    scheduler_interval_seconds: float = Field(
        default=60, gt=0, description="Auto-resolution sweep interval"
    )
    scheduler_enabled: bool = Field(default=True, description="Run the periodic sweep")

    # Analytics
    trend_default_granularity: Granularity = Field(
        default=Granularity.HOUR, description="Default bucket size for trend queries"
    )
    health_window_minutes: int = Field(
        default=60, ge=1, description="Default window for health/correlation queries"
    )
    trend_window_hours: int = Field(
        default=24, ge=1, description="Default window for trend queries"
    )
    correlation_result_limit: int = Field(
        default=20, ge=1, description="Maximum error correlation groups returned"
    )

    # Correlation
    max_affected_users: int = Field(
        default=1000, ge=1, description="Cap on distinct users stored per incident"
    )
    max_conflict_retries: int = Field(
        default=3, ge=1, description="Attempts for a merge that hits a stale version"
    )
    conflict_retry_delay_seconds: float = Field(
        default=0.01, ge=0, description="Initial delay between conflict retries"
    )
    lock_timeout_seconds: float = Field(
        default=10, gt=0, description="Wait for a per-key incident lock"
    )

    # Ingestion
    max_batch_size: int = Field(default=1000, ge=1, description="Max events per batch")
    max_clock_skew_seconds: int = Field(
        default=300, ge=0, description="Tolerated future skew on event timestamps"
    )

    # Storage
    storage_backend: str = Field(default="memory", description="Store backend (memory|duckdb)")
    db_path: str = Field(default="./data/loglens.duckdb", description="DuckDB file path")
    store_timeout_seconds: float = Field(
        default=5, gt=0, description="Timeout for a single store operation"
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")
    dev_mode: bool = Field(default=False, description="Development mode")

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Only the shipped backends are accepted."""
        v = v.lower()
        if v not in ("memory", "duckdb"):
            raise ValueError("storage_backend must be 'memory' or 'duckdb'")
        return v

    @model_validator(mode="after")
    def validate_sla_ordering(self) -> "Settings":
        """CRITICAL incidents may not get a looser SLA than ERROR incidents."""
        critical = self.sla_threshold_critical_minutes or self.sla_threshold_minutes
        error = self.sla_threshold_error_minutes or self.sla_threshold_minutes
        if critical > error:
            raise ValueError("CRITICAL SLA threshold must not exceed the ERROR threshold")
        return self

    def sla_thresholds(self) -> dict[Severity, float]:
        """Per-severity SLA thresholds in minutes."""
        return {
            Severity.CRITICAL: self.sla_threshold_critical_minutes or self.sla_threshold_minutes,
            Severity.ERROR: self.sla_threshold_error_minutes or self.sla_threshold_minutes,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
