"""Application configuration using Pydantic BaseSettings"""
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# Setup logging
logger = logging.getLogger("config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./billing.db"

    # Redis (session lookup only)
    REDIS_URL: str = "redis://localhost:6379/0"
    SESSION_TTL_SECONDS: int = 30 * 24 * 60 * 60

    # Domain & URLs
    FRONTEND_URL: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"

    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "billing-backend"
    OTEL_ENVIRONMENT: str = "development"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"

    # Catalog bootstrap
    SEED_DEFAULT_PLANS: bool = True
    SYNC_PLANS_ON_STARTUP: bool = True

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("STRIPE_CURRENCY")
    @classmethod
    def lowercase_currency(cls, v):
        return v.strip().lower() or "usd"


# Create global settings instance
settings = Settings()

if not settings.STRIPE_SECRET_KEY:
    logger.warning("STRIPE_SECRET_KEY is not set - billing provider calls will be rejected")
