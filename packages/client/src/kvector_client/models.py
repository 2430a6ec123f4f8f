"""Pydantic models for commands, responses and pool configuration.

Argument values form a closed union: ``str``, ``int``, ``float``, ``bool``,
lists of values (vectors) and string-keyed mappings of values. numpy arrays
and scalars are accepted and normalized to plain Python types.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, ClassVar, Optional, Union

import numpy as np
from kvector_common import ErrorKind, Settings
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def normalize_value(value: Any, path: str = "value") -> Any:
    """Validate one argument value and convert it to plain JSON types.

    Args:
        value: Candidate value
        path: Location used in error messages (e.g. ``vector[3]``)

    Returns:
        The value with tuples/arrays turned into lists and numpy scalars
        into Python numbers

    Raises:
        ValueError: Unsupported type, non-string mapping key, or non-finite float
    """
    if isinstance(value, np.ndarray):
        value = value.tolist()
    elif isinstance(value, np.generic):
        value = value.item()

    if isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: non-finite float {value!r} is not allowed")
        return value
    if isinstance(value, (list, tuple)):
        return [normalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: mapping keys must be strings, got {type(key).__name__}")
            normalized[key] = normalize_value(item, f"{path}.{key}")
        return normalized
    raise ValueError(f"{path}: unsupported argument type {type(value).__name__}")


class Command(BaseModel):
    """A named server command with its ordered argument mapping."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Server command name, e.g. searchTopk")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Ordered arguments")

    @field_validator("arguments", mode="before")
    @classmethod
    def validate_arguments(cls, value: Any) -> dict[str, Any]:
        """Normalize every argument value; preserves insertion order."""
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError("arguments must be a mapping")
        return normalize_value(value, "arguments")


class Success(BaseModel):
    """Successful server response."""

    model_config = ConfigDict(frozen=True)

    ok: ClassVar[bool] = True

    payload: dict[str, Any] = Field(default_factory=dict, description="Server result object")
    request_id: Optional[int] = Field(default=None, description="Echoed request id")


class Failure(BaseModel):
    """Tagged failure, from the server or from decoding."""

    model_config = ConfigDict(frozen=True)

    ok: ClassVar[bool] = False

    kind: ErrorKind = Field(description="Failure category")
    message: str = Field(description="Server or decoder message")
    code: Optional[int] = Field(default=None, description="Server error code")
    request_id: Optional[int] = Field(default=None, description="Echoed request id")


Response = Union[Success, Failure]


class PoolConfig(BaseModel):
    """Connection pool configuration. Immutable after construction."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(description="Server host")
    port: int = Field(ge=1, le=65535, description="Server port")
    username: str = Field(description="Credentials for every pooled connection")
    password: str = Field(repr=False, description="Password for username")
    connect_timeout: float = Field(default=5.0, gt=0, description="TCP connect timeout (s)")
    read_timeout: float = Field(default=30.0, gt=0, description="Response read timeout (s)")
    min_size: int = Field(default=1, ge=0, description="Connections opened eagerly")
    max_size: int = Field(default=10, ge=1, description="Hard cap on open connections")
    acquire_timeout: float = Field(default=10.0, ge=0, description="Max acquire wait (s)")
    stale_after: float = Field(default=30.0, ge=0, description="Idle seconds before probing")
    probe_timeout: float = Field(default=1.0, gt=0, description="Health probe timeout (s)")
    max_idle: Optional[float] = Field(
        default=300.0, gt=0, description="Idle seconds before an excess connection is retired"
    )

    @model_validator(mode="after")
    def check_sizes(self) -> "PoolConfig":
        """Ensure max_size >= min_size."""
        if self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )
        return self

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "PoolConfig":
        """Build a pool config from environment settings."""
        values: dict[str, Any] = {
            "host": settings.server_host,
            "port": settings.server_port,
            "username": settings.server_user,
            "password": settings.server_password,
            "connect_timeout": settings.connect_timeout,
            "read_timeout": settings.read_timeout,
            "min_size": settings.pool_min_size,
            "max_size": settings.pool_max_size,
            "acquire_timeout": settings.pool_acquire_timeout,
            "stale_after": settings.pool_stale_after,
            "probe_timeout": settings.pool_probe_timeout,
            "max_idle": settings.pool_max_idle,
        }
        values.update(overrides)
        return cls(**values)


class PoolStats(BaseModel):
    """Point-in-time pool snapshot."""

    pool_size: int = Field(description="Idle plus on-loan connections")
    active_connections: int = Field(description="Connections currently on loan")
    idle_connections: int = Field(description="Connections ready to hand out")
    min_size: int = Field(description="Configured minimum")
    max_size: int = Field(description="Configured maximum")
    waiting_acquirers: int = Field(description="Callers blocked in acquire")
    total_created: int = Field(default=0, description="Connections opened over pool lifetime")
