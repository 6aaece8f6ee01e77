"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables or a local .env file.
"""

import json
from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "PollGuard"
    APP_ENV: str = "development"
    DEBUG: bool = False
    SECRET_KEY: str = ""  # Required - loaded from environment

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_required_secrets(cls, v: str, info: Any) -> str:
        """Validate that required secrets are set."""
        if not v:
            raise ValueError(f"{info.field_name} must be set in environment")
        return v

    # Authentication (tokens are issued by the accounts service)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Database - PostgreSQL
    DATABASE_URL: str | None = None  # Overrides the POSTGRES_* parts when set
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "pollguard"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "pollguard"
    DB_ECHO: bool = False

    @property
    def database_url(self) -> str:
        """Resolve the async SQLAlchemy connection URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Honour X-Forwarded-For / X-Real-IP (only behind a trusted reverse proxy)
    TRUST_PROXY_HEADERS: bool = True

    # Vote tokens
    # Without VOTE_TOKEN_SECRET a random per-process key is used outside production
    VOTE_TOKEN_SECRET: str | None = None
    VOTE_TOKEN_MAX_AGE_SECONDS: int = 300
    REQUIRE_VOTE_TOKEN: bool = False
    ACCEPT_CLIENT_MINTED_TOKENS: bool = False

    # Vote attempt rate limiting (per poll, IP and device)
    VOTE_RATE_LIMIT_MAX_ATTEMPTS: int = 5
    VOTE_RATE_LIMIT_WINDOW_MINUTES: int = 15
    VOTE_RATE_LIMIT_SUSPICIOUS_THRESHOLD: int = 3

    # Vote timing
    VOTE_MIN_TIME_ON_PAGE_MS: int = 2000
    VOTE_MIN_TIME_BETWEEN_VOTES_MS: int = 1000

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
