"""Configuration management for kvector.

Settings are read from environment variables (case-insensitive) and an
optional ``.env`` file in the working directory.

Environment variables:
    SERVER_HOST / SERVER_PORT         -> database server address
    SERVER_USER / SERVER_PASSWORD     -> credentials used by pools
    CONNECT_TIMEOUT / READ_TIMEOUT    -> socket timeouts in seconds
    POOL_MIN_SIZE / POOL_MAX_SIZE     -> pool bounds
    POOL_ACQUIRE_TIMEOUT              -> max wait for a pooled connection
    POOL_STALE_AFTER                  -> idle seconds before a probe on acquire
    POOL_PROBE_TIMEOUT                -> health probe read timeout
    POOL_MAX_IDLE                     -> idle seconds before excess connections close
    LOG_LEVEL / LOG_FORMAT            -> logging setup

Example:
    >>> from kvector_common import get_settings
    >>> settings = get_settings()
    >>> settings.server_port
    7878
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("console", "json")


class Settings(BaseSettings):
    """Runtime settings for kvector clients and pools."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    server_host: str = Field(default="localhost", description="Database server host")
    server_port: int = Field(default=7878, ge=1, le=65535, description="Database server port")
    server_user: str = Field(default="admin", description="Username for pooled connections")
    server_password: str = Field(default="admin", description="Password for pooled connections")

    # Socket timeouts
    connect_timeout: float = Field(default=5.0, gt=0, description="TCP connect timeout (s)")
    read_timeout: float = Field(default=30.0, gt=0, description="Response read timeout (s)")

    # Pool
    pool_min_size: int = Field(default=1, ge=0, description="Connections kept open")
    pool_max_size: int = Field(default=10, ge=1, description="Hard cap on open connections")
    pool_acquire_timeout: float = Field(default=10.0, ge=0, description="Max acquire wait (s)")
    pool_stale_after: float = Field(default=30.0, ge=0, description="Idle time before probing (s)")
    pool_probe_timeout: float = Field(default=1.0, gt=0, description="Health probe timeout (s)")
    pool_max_idle: float = Field(default=300.0, gt=0, description="Idle time before shrinking (s)")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="console", description="console or json")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Normalize and validate log level."""
        upper = value.upper()
        if upper not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got {value!r}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """Normalize and validate log format."""
        lower = value.lower()
        if lower not in VALID_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {VALID_LOG_FORMATS}, got {value!r}")
        return lower


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Call ``get_settings.cache_clear()`` to reload after changing the
    environment.
    """
    return Settings()
