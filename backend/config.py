"""
ComplyBook Reconciliation - Configuration

All runtime configuration comes from environment variables (or a local
``.env`` file) through a single cached ``Settings`` object.

Sections:
- Runtime: environment name, debug flag
- Database: async SQLAlchemy URL (asyncpg in production, aiosqlite locally)
- Audit: master key for the HMAC-chained audit log
- Reconciliation: suggestion threshold and alert tuning
- Observability/API: log level, Sentry DSN, OpenAPI metadata, CORS
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ASYNC_DRIVERS = ("postgresql+asyncpg://", "sqlite+aiosqlite://")

# Frontend dev servers allowed outside production
DEV_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:5000",
    "http://localhost:5173",
    "http://127.0.0.1:5000",
    "http://127.0.0.1:5173",
)

MIN_AUDIT_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Environment-backed settings, validated by pydantic."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="development", description="development, staging, test or production")
    DEBUG: bool = Field(default=False, description="Force debug mode outside development")

    # Database
    DATABASE_URL: str = Field(default="", description="postgresql+asyncpg://... or sqlite+aiosqlite://...")
    DATABASE_SSL: bool = Field(default=False, description="Require SSL for PostgreSQL connections")

    # Audit
    AUDIT_HMAC_KEY: str = Field(default="", description="Master key for the reconciliation audit chain")

    # Reconciliation
    SUGGESTION_THRESHOLD: int = Field(
        default=70, ge=0, le=100,
        description="Minimum similarity score (0-100) for a match suggestion",
    )
    LARGE_DIFFERENCE_THRESHOLD: Decimal = Field(
        default=Decimal("1000.00"), ge=0,
        description="Balance difference that raises a large_difference alert",
    )
    STALE_UNRECONCILED_DAYS: int = Field(
        default=30, ge=1,
        description="Age in days after which an unmatched transaction is stale",
    )

    # Observability / API
    LOG_LEVEL: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    SENTRY_DSN: str = Field(default="", description="Sentry DSN; empty disables error tracking")
    API_TITLE: str = Field(default="ComplyBook Reconciliation API")
    API_VERSION: str = Field(default="1.0.0")
    CORS_ORIGINS: str = Field(default="", description="Comma-separated allowed origins")

    @field_validator("ENVIRONMENT")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower() or "development"

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {value}")
        return level

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        """Configured origins, plus local dev servers outside production."""
        origins = set()
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins.update(o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip())
        if not self.is_production:
            origins.update(DEV_ORIGINS)
        return sorted(origins)

    def validate_production_config(self) -> List[str]:
        """
        Configuration problems that must block a production start.

        The audit key and database URL are checked in every environment:
        without them no reconciliation can be recorded.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")
        elif not self.DATABASE_URL.startswith(ASYNC_DRIVERS):
            errors.append("DATABASE_URL must use an async driver (asyncpg or aiosqlite)")

        if not self.AUDIT_HMAC_KEY:
            errors.append("AUDIT_HMAC_KEY is required")
        elif len(self.AUDIT_HMAC_KEY) < MIN_AUDIT_KEY_LENGTH:
            errors.append(f"AUDIT_HMAC_KEY should be at least {MIN_AUDIT_KEY_LENGTH} characters")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")
            if self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL cannot use SQLite in production")
            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Load settings once per process.

    Raises:
        ValueError: production configuration is invalid
    """
    settings = Settings()
    logger.info(f"Loaded settings for environment: {settings.ENVIRONMENT}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def get_cors_config() -> Dict[str, Any]:
    """Keyword arguments for CORSMiddleware."""
    return {
        "allow_origins": get_settings().cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Accept", "Origin", "X-Request-ID", "X-User-Id"],
        "expose_headers": ["X-Request-ID", "X-Process-Time"],
        "max_age": 600,
    }


def validate_environment() -> Dict[str, Any]:
    """
    Configuration report used at startup and by the status endpoints.

    Values are never included, only whether each variable is set.
    """
    settings = get_settings()
    errors = settings.validate_production_config()

    warnings = []
    if not settings.SENTRY_DSN:
        warnings.append("SENTRY_DSN not set; error tracking disabled")
    if not settings.is_production and settings.CORS_ORIGINS == "*":
        warnings.append("CORS_ORIGINS '*' is ignored; only dev origins are allowed")

    return {
        "valid": not errors,
        "environment": settings.ENVIRONMENT,
        "errors": errors,
        "warnings": warnings,
        "variables": {
            name: "set" if getattr(settings, name) else "not set"
            for name in ("DATABASE_URL", "AUDIT_HMAC_KEY", "SENTRY_DSN", "CORS_ORIGINS")
        },
    }
