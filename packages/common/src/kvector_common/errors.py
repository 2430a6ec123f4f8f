"""Custom error types for the kvector client.

All errors follow the "fail fast" principle with explicit messages. The set is
closed: every failure surfaced by a connection, client or pool is one of the
classes below, tagged with an ``ErrorKind``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories shared by exceptions and ``Failure`` responses."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    QUERY = "query"
    PROTOCOL = "protocol"
    POOL_EXHAUSTED = "pool_exhausted"
    INVARIANT = "invariant"


class KVectorError(Exception):
    """Base exception for all kvector errors.

    Args:
        message: Human readable description
        host: Server host the failure relates to, if any
        port: Server port the failure relates to, if any
        code: Error code returned by the server, if any
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.host = host
        self.port = port
        self.code = code

    @property
    def address(self) -> Optional[str]:
        """``host:port`` of the server, when known."""
        if self.host is None:
            return None
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        context = []
        if self.address:
            context.append(f"server={self.address}")
        if self.code is not None:
            context.append(f"code={self.code}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConnectionError(KVectorError):
    """Socket refused, reset, timed out, closed by peer, or DNS failure."""

    kind = ErrorKind.CONNECTION


class AuthenticationError(KVectorError):
    """Credentials rejected, or a command sent on an unauthenticated connection."""

    kind = ErrorKind.AUTHENTICATION


class QueryError(KVectorError):
    """Server returned a tagged failure, or the request was rejected client-side.

    Client-side rejections (no space selected, invalid ``k``) happen before
    any network I/O.
    """

    kind = ErrorKind.QUERY


class ProtocolError(KVectorError):
    """Response could not be decoded, or a command could not be encoded."""

    kind = ErrorKind.PROTOCOL


class PoolExhaustedError(KVectorError):
    """No pooled connection became available within the acquire timeout."""

    kind = ErrorKind.POOL_EXHAUSTED


class InvariantViolation(KVectorError):
    """Programmer misuse, e.g. releasing a connection the pool does not own."""

    kind = ErrorKind.INVARIANT


ERROR_CLASSES: dict[ErrorKind, type[KVectorError]] = {
    cls.kind: cls
    for cls in (
        ConnectionError,
        AuthenticationError,
        QueryError,
        ProtocolError,
        PoolExhaustedError,
        InvariantViolation,
    )
}


def error_class(kind: ErrorKind) -> type[KVectorError]:
    """Return the exception class for an error kind."""
    return ERROR_CLASSES[kind]
