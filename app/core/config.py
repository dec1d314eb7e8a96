"""Application configuration module.

This module contains settings for the smart routing service,
loaded from environment variables with appropriate defaults.
"""

from __future__ import annotations

import os
from typing import Optional, Any, List, Union
from enum import Enum
import logging

from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EnvironmentType(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with defaults.

    Settings are loaded from environment variables, with fallback to
    values in .env file if present, and finally to the default values
    specified here.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment setting
    ENVIRONMENT: EnvironmentType = EnvironmentType.DEVELOPMENT

    # App Information
    APP_NAME: str = "Smart Routing Shortener"
    APP_VERSION: str = "0.1.0"
    APP_DESCRIPTION: str = "URL shortener with rule-based smart routing"

    # API Configuration
    API_PREFIX: str = "/api"
    DEBUG: bool = False

    # CORS settings
    CORS_ORIGINS: Union[List[str], str] = ["*"]

    # PostgreSQL settings
    POSTGRES_SERVER: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="url_shortener")
    DATABASE_URL: Optional[str] = None  # Full override, e.g. for sqlite

    # PostgreSQL pool settings
    POSTGRES_POOL_SIZE: int = 20
    POSTGRES_POOL_MAX_OVERFLOW: int = 10
    POSTGRES_POOL_TIMEOUT: int = 30
    POSTGRES_POOL_RECYCLE: int = 300
    DB_ECHO: bool = False
    DB_CREATE_TABLES: bool = True  # Create missing tables at startup

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_MAX_CONNECTIONS: int = 20

    # Cache settings
    CACHE_ENABLED: bool = True
    URL_CACHE_TTL: int = 3600  # Slug -> link resolution entries (seconds)

    # Smart routing
    ROUTING_CACHE_TTL: int = 3600  # Active rule set per link (seconds)
    ROUTING_MAX_RULES_PER_URL: int = 50
    ROUTING_MAX_CONDITIONS: int = 20
    ROUTING_MATCH_COUNT_FLUSH_INTERVAL: int = 30  # seconds
    ROUTING_MATCH_COUNT_MAX_RETRIES: int = 3

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILENAME: str = "app.log"
    LOG_ROTATION: str = "10 MB"
    LOG_RETENTION: str = "7 days"
    LOG_FORMAT: str = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name} | {message}"
    LOG_JSON: bool = True
    LOG_TO_FILE: bool = True

    # Scheduler settings
    SCHEDULER_JOB_COALESCE: bool = True  # Combine pending executions of a job into one
    SCHEDULER_JOB_MAX_INSTANCES: int = 1
    SCHEDULER_MISFIRE_GRACE_TIME: int = 60

    # Validators
    @field_validator("CORS_ORIGINS")
    def validate_list_or_string(cls, v: Union[List[str], str]) -> List[str]:
        """Convert comma-separated string to list if needed."""
        if isinstance(v, str):
            if not v.strip():
                return []
            if v == "*":
                return ["*"]
            return [item.strip() for item in v.split(",")]
        return v

    @field_validator("ROUTING_MATCH_COUNT_MAX_RETRIES", "ROUTING_MAX_RULES_PER_URL", "ROUTING_MAX_CONDITIONS")
    def validate_positive(cls, v: Any) -> int:
        if int(v) < 1:
            raise ValueError("must be at least 1")
        return int(v)

    # Computed fields
    @computed_field
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """Construct the SQLAlchemy database URI from settings or use override."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @computed_field
    def REDIS_URI(self) -> str:
        """Construct the Redis URI from settings."""
        password_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{password_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


# Create a singleton instance of the settings
settings = Settings()
