"""
OBE Learning Platform
Application configuration and settings management
"""

import os
import secrets
from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application Settings
    APP_NAME: str = "OBE Learning Platform"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Security Settings
    JWT_SECRET_KEY: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS Settings
    ALLOWED_HOSTS: List[str] = Field(
        default=["*"],
        description="Comma-separated list of allowed hosts"
    )

    @field_validator("ALLOWED_HOSTS", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, v):
        if isinstance(v, str):
            return [host.strip() for host in v.split(",")]
        return v

    # Database Configuration
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "obe_platform"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = "password"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    @property
    def database_url(self) -> str:
        """Generate database URL from components or use provided URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # For development, use SQLite
        if self.ENVIRONMENT == "development":
            return "sqlite:///./obe_platform.db"

        # For production, use PostgreSQL
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Redis Configuration (real-time notification fan-out)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_CHANNEL_PREFIX: str = "notifications"

    # Notification delivery: "websocket" (in-process) or "redis" (pub/sub)
    NOTIFICATION_BACKEND: str = "websocket"

    @field_validator("NOTIFICATION_BACKEND")
    @classmethod
    def validate_notification_backend(cls, v):
        if v not in ("websocket", "redis"):
            raise ValueError("NOTIFICATION_BACKEND must be 'websocket' or 'redis'")
        return v

    # Alert sweep
    ENABLE_ALERT_SWEEP: bool = True
    ALERT_SWEEP_INTERVAL_SECONDS: int = 300  # 5 minutes
    ALERT_DEDUP_WINDOW_HOURS: int = 24
    MISSED_DEADLINE_LOOKBACK_DAYS: int = 7

    # At-risk heuristics
    AT_RISK_INACTIVITY_DAYS: int = 7
    AT_RISK_ATTAINMENT_THRESHOLD: float = 50.0
    AT_RISK_LOW_CLO_COUNT: int = 2

    # Outcome attainment
    CLO_MET_THRESHOLD: float = 70.0
    MAPPING_WEIGHT_WARN_MIN: float = 0.5
    MAPPING_WEIGHT_WARN_MAX: float = 1.0

    # Submissions
    DEFAULT_LATE_WINDOW_HOURS: int = 24

    # Monitoring and Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DevelopmentSettings(Settings):
    """Development environment specific settings"""
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    DB_ECHO: bool = False


class ProductionSettings(Settings):
    """Production environment specific settings"""
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    DB_ECHO: bool = False

    # Require these in production
    JWT_SECRET_KEY: str
    DATABASE_URL: str


class TestingSettings(Settings):
    """Testing environment specific settings"""
    DEBUG: bool = True
    ENVIRONMENT: str = "testing"
    DATABASE_URL: str = "sqlite+aiosqlite://"
    JWT_SECRET_KEY: str = "testing-secret"
    ENABLE_ALERT_SWEEP: bool = False
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 5


@lru_cache()
def get_settings() -> Settings:
    """Get application settings with caching"""
    environment = os.getenv("ENVIRONMENT", "development").lower()

    if environment == "production":
        return ProductionSettings()
    elif environment == "testing":
        return TestingSettings()
    else:
        return DevelopmentSettings()


def get_redis_url() -> str:
    """Get the Redis URL for the current environment"""
    settings = get_settings()
    if settings.REDIS_PASSWORD:
        return f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
    return f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"


# Export commonly used settings
__all__ = [
    "Settings",
    "DevelopmentSettings",
    "ProductionSettings",
    "TestingSettings",
    "get_settings",
    "get_redis_url"
]
