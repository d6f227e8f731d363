"""
Configuration and settings for the preference service.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prefstore.store import MAX_WRITE_BYTES, MAX_WRITE_ENTRIES

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Bearer tokens
    jwt_secret: str = Field(..., min_length=1)
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")

    # HTTP
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080)
    api_prefix: str = Field(default="/api/v1")
    cors_allow_origin: str = Field(default="*")
    log_level: str = Field(default="info")

    # DynamoDB
    dynamodb_endpoint: Optional[str] = Field(default=None)
    dynamodb_table_name: str = Field(default="user-preferences")
    aws_region: str = Field(default="us-east-1")
    backend_connect_timeout: float = Field(default=2.0, gt=0)
    backend_read_timeout: float = Field(default=5.0, gt=0)
    backend_max_attempts: int = Field(default=3, ge=1)

    # Relational backend (any SQLAlchemy URL)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="PREFSTORE_USE_IN_MEMORY_BACKENDS"
    )
    dev_bypass_auth: bool = Field(default=False)
    dev_bypass_subject: str = Field(default="dev-user", min_length=1)

    # Request limits; the ceilings keep every write inside DynamoDB's
    # 4 KB expression and 400 KB item limits.
    max_preferences: int = Field(default=MAX_WRITE_ENTRIES, ge=1, le=MAX_WRITE_ENTRIES)
    max_key_length: int = Field(default=128, ge=1)
    max_value_length: int = Field(default=4096, ge=1)
    max_request_bytes: int = Field(default=MAX_WRITE_BYTES, ge=1, le=MAX_WRITE_BYTES)

    @field_validator("jwt_issuer", "dynamodb_endpoint", "database_url")
    @classmethod
    def _blank_as_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _symmetric_only(cls, value: str) -> str:
        value = value.upper()
        if value not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"jwt_algorithm must be one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        return value

    @property
    def logging_level(self) -> int:
        """Numeric level for ``log_level``; unknown names fall back to INFO."""
        return _LOG_LEVELS.get(self.log_level.strip().lower(), logging.INFO)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
