"""Worker settings management.

WHAT:
    Central `Settings` object for the ingestion worker, loaded from the
    environment or a local `.env` file.

WHY:
    Token refresh window, batch size and the ledger retry policy are tunables
    that ops may need to adjust without touching service code.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Worker settings loaded from environment or .env."""

    # Redis (ARQ job queue + cron)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Google OAuth client used for refresh-token exchange
    GOOGLE_OAUTH_CLIENT_ID: Optional[str] = None
    GOOGLE_OAUTH_CLIENT_SECRET: Optional[str] = None
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # YouTube Reporting API
    YOUTUBE_REPORTING_BASE_URL: str = "https://youtubereporting.googleapis.com/v1"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Refresh access tokens that expire within this window
    TOKEN_REFRESH_WINDOW_SECONDS: int = 300

    # Storage layer payload limit per insert request
    METRICS_BATCH_SIZE: int = 500

    # Ledger retry policy for report files stuck in `error`
    LEDGER_MAX_ATTEMPTS: int = 5
    LEDGER_RETRY_BASE_MINUTES: int = 30
    LEDGER_RETRY_MAX_MINUTES: int = 24 * 60
    # A `pending` claim older than this is treated as abandoned (worker crash)
    LEDGER_CLAIM_LEASE_MINUTES: int = 30

    # Daily metadata refresh picks jobs older than this
    METADATA_REFRESH_MAX_AGE_DAYS: int = 30

    # Error tracking (Sentry stays disabled without a DSN)
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    RELEASE_VERSION: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
