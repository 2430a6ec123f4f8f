"""Shared foundations for kvector: errors, configuration and logging."""

from kvector_common.config import Settings, get_settings
from kvector_common.errors import (
    AuthenticationError,
    ConnectionError,
    ErrorKind,
    InvariantViolation,
    KVectorError,
    PoolExhaustedError,
    ProtocolError,
    QueryError,
    error_class,
)
from kvector_common.logging_config import configure_logging, get_logger

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Errors
    "ErrorKind",
    "KVectorError",
    "ConnectionError",
    "AuthenticationError",
    "QueryError",
    "ProtocolError",
    "PoolExhaustedError",
    "InvariantViolation",
    "error_class",
    # Logging
    "configure_logging",
    "get_logger",
]
