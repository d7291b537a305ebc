"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the Celery worker
and the cron-driven Strava sync runner.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests point it at SQLite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="coaching_app")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Strava API Configuration
    STRAVA_CLIENT_ID: Optional[str] = Field(default=None)
    STRAVA_CLIENT_SECRET: Optional[str] = Field(default=None)
    STRAVA_API_BASE: str = Field(default="https://www.strava.com/api/v3")
    STRAVA_OAUTH_TOKEN_URL: str = Field(default="https://www.strava.com/oauth/token")

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # Cron trigger (shared secret sent as X-Cron-Secret)
    CRON_SECRET: Optional[str] = Field(default=None)
    # Kill switch for scheduled sync runs.
    STRAVA_AUTOSYNC_ENABLED: bool = Field(default=True)

    # --- Strava sync engine ---
    STRAVA_SYNC_MAX_INTENTS_PER_RUN: int = Field(default=50, ge=1)
    STRAVA_SYNC_MAX_ATHLETES_PER_BACKFILL: int = Field(default=20, ge=1)
    # PROCESSING intents older than this are presumed orphaned by a crashed worker.
    STRAVA_SYNC_LEASE_TIMEOUT_S: int = Field(default=15 * 60, ge=60)
    STRAVA_SYNC_MAX_ATTEMPTS: int = Field(default=10, ge=1)
    STRAVA_SYNC_BACKOFF_BASE_S: int = Field(default=60, ge=1)
    STRAVA_SYNC_BACKOFF_MAX_S: int = Field(default=6 * 60 * 60, ge=1)
    STRAVA_SYNC_LOOKBACK_DAYS: int = Field(default=14, ge=1)
    STRAVA_SYNC_BUFFER_S: int = Field(default=2 * 60 * 60, ge=0)
    STRAVA_SYNC_PAGE_SIZE: int = Field(default=50, ge=1, le=200)
    STRAVA_SYNC_MAX_FORCE_DAYS: int = Field(default=14, ge=1)
    # Whether a planned entry dated the day before/after may be matched.
    STRAVA_SYNC_ALLOW_ADJACENT_DAY_MATCH: bool = Field(default=True)
    # Safety sweep: connections not synced for this long get a poll intent.
    STRAVA_SYNC_STALE_AFTER_HOURS: int = Field(default=6, ge=1)
    STRAVA_SYNC_SWEEP_LIMIT: int = Field(default=200, ge=1)
    STRAVA_DEFAULT_TIMEZONE: str = Field(default="UTC")

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Cache Configuration
    CACHE_TTL_ATHLETE_PROFILE: int = Field(default=600)  # 10 minutes

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
