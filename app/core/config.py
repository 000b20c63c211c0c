"""
Configuration and Settings Management

This module handles all application configuration using Pydantic Settings
with support for environment variables and 12-Factor App principles.
"""

import logging
import re
import sys
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# =============================================================================
# Core Application Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: DATABASE__HOST=localhost
    """

    # =========================================================================
    # Application Core
    # =========================================================================

    APP_NAME: str = "Rescue Dispatch"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Incident verification and mission dispatch engine"

    ENVIRONMENT: Literal["development", "testing", "staging", "production"] = "development"
    DEBUG: bool = Field(default=False, description="Debug mode")

    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )

    # =========================================================================
    # Database Configuration (PostgreSQL)
    # =========================================================================

    POSTGRES_HOST: str = Field(default="localhost", description="PostgreSQL host")
    POSTGRES_PORT: int = Field(default=5432, description="PostgreSQL port")
    POSTGRES_DB: str = Field(default="rescue_dispatch", description="Database name")
    POSTGRES_USER: str = Field(default="postgres", description="Database user")
    POSTGRES_PASSWORD: str = Field(default="postgres", description="Database password")

    DATABASE_POOL_SIZE: int = Field(default=10, description="Database connection pool size")
    DATABASE_MAX_OVERFLOW: int = Field(default=20, description="Max overflow connections")
    DATABASE_POOL_TIMEOUT: int = Field(default=30, description="Pool timeout in seconds")
    DATABASE_ECHO: bool = Field(default=False, description="Echo SQL queries")

    # Computed database URL (will be set by model_validator)
    DATABASE_URL: Optional[str] = None

    @model_validator(mode='after')
    def assemble_database_url(self) -> 'Settings':
        # Respect explicit DATABASE_URL from environment if provided
        url = self.DATABASE_URL
        if not url:
            url = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        # Normalize common URL schemes to SQLAlchemy async drivers
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        object.__setattr__(self, "DATABASE_URL", url)
        return self

    # =========================================================================
    # Logging and Monitoring
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "pretty"] = Field(default="json")

    METRICS_ENABLED: bool = Field(default=True)
    HEALTH_CHECK_PATH: str = Field(default="/health")

    # =========================================================================
    # Business Logic Configuration
    # =========================================================================

    # Incidents
    INCIDENT_TITLE_MIN_LENGTH: int = Field(default=3)
    INCIDENT_CLOSE_NOTE_MIN_LENGTH: int = Field(
        default=5,
        description="Minimum length of the reporter's closure note"
    )
    MAX_MEDIA_PER_INCIDENT: int = Field(default=5)

    # Missions
    DEFAULT_MISSION_PRIORITY: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"] = "MEDIUM"
    REQUIRE_APPROVED_RESPONDERS: bool = Field(
        default=True,
        description="Only users with an approved volunteer application may be assigned"
    )
    TRACKING_CLOCK_SKEW_SECONDS: int = Field(
        default=30,
        description="Allowed drift of device timestamps outside the EN_ROUTE window"
    )

    # Volunteer applications
    VOLUNTEER_MIN_AGE_YEARS: int = Field(default=18)
    MAX_CERTIFICATES_PER_APPLICATION: int = Field(default=10)
    MAX_EXPERIENCE_LENGTH: int = Field(default=500)

    # =========================================================================
    # Development
    # =========================================================================

    SHOW_DOCS: bool = Field(default=True, description="Show API documentation")

    # =========================================================================
    # Validation and Post-Processing
    # =========================================================================

    @field_validator('CORS_ORIGINS', mode='before')
    def assemble_cors_origins(cls, v: Any) -> List[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str) and not v.startswith('['):
            return [i.strip() for i in v.split(',')]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(f"Invalid CORS_ORIGINS: {v}")

    # =========================================================================
    # Environment-specific configurations
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.ENVIRONMENT == "development"

    @property
    def is_sqlite(self) -> bool:
        return str(self.DATABASE_URL).startswith("sqlite")

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def DATABASE_ENGINE_OPTIONS(self) -> Dict[str, Any]:
        """Database engine configuration options."""
        options: Dict[str, Any] = {
            "echo": self.DATABASE_ECHO and not self.is_production,
        }
        # SQLite runs without a server-side connection pool
        if not self.is_sqlite:
            options.update({
                "pool_size": self.DATABASE_POOL_SIZE,
                "max_overflow": self.DATABASE_MAX_OVERFLOW,
                "pool_timeout": self.DATABASE_POOL_TIMEOUT,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            })
        return options

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "env_nested_delimiter": "__",
        "validate_assignment": True,
        "extra": "ignore",
    }


# =============================================================================
# Settings Instance and Cache
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Cached to avoid re-parsing environment variables on every call.
    Clear the cache (get_settings.cache_clear()) after changing the environment.
    """
    return Settings()


settings = get_settings()


# =============================================================================
# Logging Configuration
# =============================================================================

SENSITIVE_KEYS = {"authorization", "token", "api_key", "password", "secret", "dsn"}
_TOKEN_PATTERN = re.compile(r"(eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]+|sk-[A-Za-z0-9]{20,})")


def _ensure_exc_info_processor(logger, method_name, event_dict):
    """Attach exc_info when logging an error from inside an except block."""
    if event_dict.get("exc_info"):
        return event_dict
    if method_name in ("error", "exception", "critical") and sys.exc_info()[0] is not None:
        event_dict["exc_info"] = True
    return event_dict


def redact_secrets(_, __, event_dict):
    """Mask bearer tokens and sensitive keys before rendering."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = _TOKEN_PATTERN.sub("***REDACTED***", value)
        elif isinstance(value, dict):
            for k in list(value.keys()):
                if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                    value[k] = "***REDACTED***"
    for sensitive in ("POSTGRES_PASSWORD", "DATABASE_URL"):
        if sensitive in event_dict:
            event_dict[sensitive] = "***REDACTED***"
    return event_dict


def setup_logging() -> None:
    """Configure structured logging for the application."""
    import structlog

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _ensure_exc_info_processor,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.LOG_FORMAT == "pretty"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.LOG_LEVEL.upper())
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper()),
        format="%(message)s" if settings.LOG_FORMAT == "json" else None,
    )

    # Suppress noisy loggers in production
    if settings.is_production:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
