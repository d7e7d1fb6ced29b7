"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "PriceDesk Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./pricedesk.db"

    # Redis (Celery broker and result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Shopify Admin API
    SHOPIFY_API_VERSION: str = "2024-10"

    # Billing reconciliation
    BILLING_FETCH_TIMEOUT_SECONDS: float = 10.0
    BILLING_PERIOD_DAYS: int = 30

    # Plan catalog (JSON file); built-in catalog is used when unset
    PLAN_CATALOG_PATH: Optional[str] = None

    # Sync trigger thresholds
    SYNC_FREE_GRACE_HOURS: float = 1.0
    SYNC_STALE_AFTER_HOURS: float = 24.0

    # Usage tracking
    QUOTA_WRITE_MAX_ATTEMPTS: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
