"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache

from pydantic import Field
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
    app_name: str = Field(default="Ephemera")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite:///./data/ephemera.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Message lifecycle
    default_ttl_seconds: int = Field(default=60, ge=1, description="TTL applied to ephemeral messages without one")
    max_ttl_seconds: int = Field(default=86400, ge=1)
    countdown_interval_seconds: float = Field(default=1.0, gt=0)
    match_window_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Max created_at distance when matching a pending message to its server record",
    )

    # Backend housekeeping
    sweep_interval_seconds: float = Field(default=30.0, gt=0)
    feed_heartbeat_seconds: float = Field(default=15.0, gt=0)

    # Object store
    media_dir: str = Field(default="./data/media")
    public_base_url: str = Field(default="http://localhost:8000")

    # Client transport
    backend_url: str = Field(default="http://localhost:8000")
    request_timeout_seconds: float = Field(default=10.0, gt=0)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
