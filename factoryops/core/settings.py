# factoryops/core/settings.py
"""
FactoryOps Production Engine - Configuration Management with pydantic-settings

- Loads from environment and root .env
- Validates and normalizes values
- Cached singleton via get_settings()
"""
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Calculate path to .env in project root (2 levels up from this file)
# factoryops/core/settings.py -> <repo>/.env
_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"

_PRIORITIES = ("low", "medium", "high", "urgent", "rush")
_PROCESS_TYPES = ("printing", "washing", "fixing", "stitching", "finishing", "quality_check")


class Settings(BaseSettings):
    """
    Application settings with validation.

    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Application Settings
    # ===================
    PROJECT_NAME: str = "FactoryOps"
    VERSION: str = "1.0.0"
    DEBUG: bool = Field(default=False, description="Enable debug mode")
    ENVIRONMENT: str = Field(default="development", description="Deployment environment")

    # ===================
    # Database Settings
    # ===================
    DB_HOST: str = Field(default="localhost", description="PostgreSQL host")
    DB_PORT: int = Field(default=5432, description="PostgreSQL port")
    DB_NAME: str = Field(default="factoryops", description="Database name")
    DB_USER: str = Field(default="postgres", description="Database user")
    DB_PASSWORD: str = Field(default="postgres", description="Database password")
    DATABASE_URL: Optional[str] = Field(
        default=None, description="Full database URL (overrides DB_* settings)"
    )

    @property
    def database_url(self) -> str:
        """Build PostgreSQL database URL from components or use explicit URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # ===================
    # Logging
    # ===================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    LOG_FILE: Optional[str] = None

    @field_validator("LOG_FORMAT")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    # ===================
    # Production Orders
    # ===================
    ORDER_NUMBER_PREFIX: str = Field(default="PO", description="Prefix for production order numbers")
    DEFAULT_PRIORITY: str = Field(default="medium", description="Priority when none is given")
    QUALITY_REQUIRED_PROCESS_TYPES: Annotated[List[str], NoDecode] = Field(
        default=["quality_check"],
        description="Process types whose stages require a final quality grade before completion",
    )

    @field_validator("ORDER_NUMBER_PREFIX")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("ORDER_NUMBER_PREFIX cannot be empty")
        return v

    @field_validator("DEFAULT_PRIORITY")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in _PRIORITIES:
            raise ValueError(f"DEFAULT_PRIORITY must be one of {', '.join(_PRIORITIES)}")
        return v

    @field_validator("QUALITY_REQUIRED_PROCESS_TYPES", mode="before")
    @classmethod
    def parse_process_types(cls, v):
        if isinstance(v, str):
            v = [p.strip() for p in v.split(",") if p.strip()]
        unknown = [p for p in v if p not in _PROCESS_TYPES]
        if unknown:
            raise ValueError(f"Unknown process types: {', '.join(unknown)}")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Singleton settings loader (cached)."""
    return Settings()


# Convenience alias
settings = get_settings()
