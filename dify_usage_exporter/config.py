"""
Application Configuration
=========================
Centralized configuration management using Pydantic Settings.
"""

from functools import lru_cache
from typing import Literal
from uuid import UUID

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "test", "production"] = "production"

    # Dify console (upstream)
    dify_api_base_url: str = "http://localhost"
    dify_email: str = ""
    dify_password: str = ""
    dify_fetch_timeout_seconds: float = Field(default=30.0, ge=1, le=120)
    dify_fetch_retry_count: int = Field(default=3, ge=1, le=10)
    dify_fetch_days: int = Field(default=30, ge=1, le=365)

    # Partner billing API
    external_api_url: str = "https://localhost/v1/usage"
    external_api_token: str = ""
    external_api_timeout_seconds: float = Field(default=30.0, ge=1)
    api_meter_tenant_id: str = "00000000-0000-0000-0000-000000000000"
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    max_spool_retries: int = Field(default=10, ge=0)
    batch_size: int = Field(default=100, ge=1)

    # Local storage
    spool_dir: str = "data/spool"
    failed_dir: str = "data/failed"
    watermark_file_path: str = "data/watermark.json"
    watermark_enabled: bool = False

    # Normalization vocabulary overrides
    normalization_config_path: str = "config/normalization.yaml"

    # Scheduler
    scheduler_enabled: bool = True
    cron_schedule: str = "0 0 * * *"
    graceful_shutdown_timeout: int = Field(default=30, ge=1, le=300)

    # Health check
    healthcheck_enabled: bool = True
    healthcheck_host: str = "0.0.0.0"
    healthcheck_port: int = 8080

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Metrics
    metrics_enabled: bool = True

    @field_validator("external_api_url")
    @classmethod
    def require_https(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("EXTERNAL_API_URL must use HTTPS protocol")
        return v

    @field_validator("api_meter_tenant_id")
    @classmethod
    def require_uuid(cls, v: str) -> str:
        UUID(v)
        return v

    @field_validator("dify_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
