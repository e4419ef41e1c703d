"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and beat.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins over the POSTGRES_* parts when set (tests use sqlite://)
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="engagement")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Redis (job locks)
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    OUTBOX_LOCK_TTL_S: int = Field(default=300)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Chat transport bridge (HTTP sidecar that owns the WhatsApp session)
    TRANSPORT_BRIDGE_URL: str = Field(default="http://whatsapp-bridge:3001")
    TRANSPORT_BRIDGE_TOKEN: Optional[str] = Field(default=None)
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Engagement lifecycle timing
    ENGAGEMENT_INACTIVITY_DAYS: int = Field(default=14, ge=1)
    ENGAGEMENT_GOODBYE_TIMEOUT_HOURS: int = Field(default=48, ge=1)
    ENGAGEMENT_REMIND_LATER_DAYS: int = Field(default=14, ge=1)
    ENGAGEMENT_UNPROMPTED_RETURN_DAYS: int = Field(default=3, ge=0)
    ENGAGEMENT_WEEKLY_LOOKBACK_DAYS: int = Field(default=7, ge=1)

    # Outbox delivery
    ENGAGEMENT_MAX_MESSAGE_RETRIES: int = Field(default=3, ge=1)
    ENGAGEMENT_SEND_DELAY_MS: int = Field(default=500, ge=0)  # provider rate limit
    ENGAGEMENT_OUTBOX_BATCH_SIZE: int = Field(default=100, ge=1)
    ENGAGEMENT_SEND_CLAIM_TIMEOUT_S: int = Field(default=600, ge=1)

    # Localization
    DEFAULT_LOCALE: str = Field(default="pt-BR")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)


# Global settings instance
settings = Settings()
