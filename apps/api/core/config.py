"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the training service.
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
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="training_service")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (takes precedence over the POSTGRES_* parts)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Collaborator services
    MEDICAL_SERVICE_URL: str = Field(default="http://medical-service:3005")
    PLANNING_SERVICE_URL: str = Field(default="http://planning-service:3006")
    ORGANIZATION_SERVICE_URL: str = Field(default="http://user-service:3001")

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Cache Configuration
    CACHE_TTL_DEFAULT: int = Field(default=300)  # 5 minutes
    COMPLIANCE_CACHE_TTL_S: int = Field(default=300)
    ALTERNATIVES_CACHE_TTL_S: int = Field(default=300)
    PLAYER_ASSIGNMENTS_CACHE_TTL_S: int = Field(default=300)
    PLANNING_PHASE_CACHE_TTL_S: int = Field(default=3600)  # 1 hour
    SEASON_PLAN_CACHE_TTL_S: int = Field(default=7200)  # 2 hours
    # Fallback copy served when the planning service is unreachable.
    PLANNING_STALE_CACHE_TTL_S: int = Field(default=86400)

    # Event publishing
    EVENT_PUBLISH_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    EVENT_PUBLISH_RETRY_DELAY_S: float = Field(default=0.5, ge=0)
    EVENT_CHANNEL_PREFIX: str = Field(default="events")
    EVENT_SOURCE: str = Field(default="training-service")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
