"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all poller settings with validation.

Usage:
    from livefeed.config import settings

    endpoint = settings.FEED_ENDPOINT_URL
    interval = settings.POLL_INTERVAL_SECONDS
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Feed Service Configuration
    FEED_ENDPOINT_URL: str = Field(default="http://api.livefeed.example/LiveFeed2.asmx")
    FEED_SOAP_NAMESPACE: str = Field(default="http://tempuri.org/")
    FEED_API_KEY: str = Field(default="")
    FEED_TIMEOUT: int = Field(default=60, gt=0)
    FEED_MAX_RETRIES: int = Field(default=3, ge=0)

    # Continuous Polling
    LIVE_MAX_COUNT: int = Field(default=1000, gt=0)
    POLL_INTERVAL_SECONDS: int = Field(default=240, ge=0)
    SAFETY_SKEW_SECONDS: int = Field(default=300, ge=0)
    DEFAULT_LOOKBACK_MINUTES: int = Field(default=60, ge=0)
    LIVE_RETRY_DELAY_SECONDS: int = Field(default=60, ge=0)
    STATUS_INTERVAL_SECONDS: int = Field(default=600, ge=0)

    # Bounded Backfill
    BACKFILL_RETRY_DELAY_SECONDS: int = Field(default=30, ge=0)
    BACKFILL_DEFAULT_MAX_COUNT: int = Field(default=100, gt=0)

    # 0 keeps retrying forever
    MAX_CONSECUTIVE_FAILURES: int = Field(default=0, ge=0)

    # File System Paths
    CURSOR_FILE: str = Field(default="nextfrom_timestamp.txt")
    OUTPUT_DIR: str = Field(default=".")

    # Redis Configuration (empty URL disables batch events)
    REDIS_URL: str = Field(default="")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_BATCHES: str = Field(default="livefeed.batches")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="text")

    # Application Metadata
    APP_NAME: str = Field(default="livefeed-poller")
    APP_VERSION: str = Field(default="0.1.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
