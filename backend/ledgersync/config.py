"""Application configuration using Pydantic settings."""

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
    database_url: str = "postgresql+asyncpg://localhost:5432/ledgersync"

    # Xero Accounting API (token acquisition happens outside the engine)
    xero_api_base_url: str = "https://api.xero.com/api.xro/2.0"
    xero_access_token: str | None = None
    xero_tenant_id: str = "default"

    # Outbound throttling and retries
    api_min_interval_seconds: float = 1.0  # Xero allows 60 calls/minute per tenant
    api_max_retries: int = 3
    api_max_rate_limit_retries: int = 5
    api_backoff_base_seconds: float = 1.0
    api_max_backoff_seconds: float = 60.0
    api_request_timeout_seconds: float = 30.0

    # Sync engine
    sync_timeout_minutes: int = 30
    session_freshness_minutes: int = 30
    checkpoint_stale_minutes: int = 30

    # Daily scheduled sync (03:30 Sydney time)
    daily_sync_enabled: bool = True
    daily_sync_hour: int = 3
    daily_sync_minute: int = 30
    sync_timezone: str = "Australia/Sydney"
    scheduled_initiator: str = "system"

    # Health thresholds
    health_warning_hours: int = 20
    health_overdue_hours: int = 25

    # API settings
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit_per_minute: int = 60

    # Environment
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
