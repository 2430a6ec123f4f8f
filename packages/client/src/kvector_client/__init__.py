"""kvector Python client.

Connection management and transport for the kvector key-value / vector
search server.

Quick Start
-----------
>>> from kvector_client import Client
>>> with Client.connect("localhost", 7878, "admin", "secret") as client:
...     client.use_space("docs")
...     client.search_topk([0.1, 0.2, 0.3], k=5)

Pooled
------
>>> from kvector_client import ConnectionPool, PoolConfig
>>> config = PoolConfig(host="localhost", port=7878, username="admin", password="secret")
>>> with ConnectionPool(config) as pool:
...     with pool.client() as client:
...         client.get("greeting", space="kv")
...     pool.stats()
"""

from kvector_common import (
    AuthenticationError,
    ConnectionError,
    ErrorKind,
    InvariantViolation,
    KVectorError,
    PoolExhaustedError,
    ProtocolError,
    QueryError,
)

from kvector_client.client import Client
from kvector_client.codec import decode, encode
from kvector_client.connection import Connection, error_from_failure
from kvector_client.models import (
    Command,
    Failure,
    PoolConfig,
    PoolStats,
    Response,
    Success,
)
from kvector_client.pool import ConnectionPool

__all__ = [
    # Client
    "Client",
    "Connection",
    "ConnectionPool",
    # Models
    "Command",
    "Response",
    "Success",
    "Failure",
    "PoolConfig",
    "PoolStats",
    # Codec
    "encode",
    "decode",
    # Errors
    "ErrorKind",
    "KVectorError",
    "ConnectionError",
    "AuthenticationError",
    "QueryError",
    "ProtocolError",
    "PoolExhaustedError",
    "InvariantViolation",
    "error_from_failure",
]

__version__ = "0.1.0"
