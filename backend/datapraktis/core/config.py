"""
DataPraktis - Configuration
============================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "DataPraktis Settlement Engine"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./datapraktis.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Identity (tokens are issued by the identity service, verified here)
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ==========================================================================
    # Payment Gateway (Midtrans)
    # ==========================================================================
    MIDTRANS_SERVER_KEY: str = ""
    MIDTRANS_IS_PRODUCTION: bool = False
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_ATTEMPTS: int = 3

    # ==========================================================================
    # Settlement Policy
    # ==========================================================================
    PLATFORM_FEE_RATE: Decimal = Field(Decimal("0.10"), ge=0, lt=1)
    SECURITY_HOLD_DAYS: int = Field(5, ge=0)
    REVIEW_WINDOW_DAYS: int = Field(14, ge=1)
    DEFAULT_REVISION_LIMIT: int = Field(3, ge=0)
    MIN_WITHDRAWAL_AMOUNT: int = Field(100_000, ge=1)
    MIN_PROPOSAL_BUDGET: int = Field(500_000, ge=1)

    # ==========================================================================
    # Auto-Release Scheduler
    # ==========================================================================
    AUTO_RELEASE_ENABLED: bool = False
    AUTO_RELEASE_INTERVAL_SECONDS: int = Field(3600, ge=1)
    CRON_SECRET: str | None = None

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
