"""Single TCP connection to a kvector server.

A connection carries at most one request at a time: it writes one framed
command, then blocks until the matching response arrives or the read timeout
elapses. Any transport or framing failure leaves the byte stream in an
unknown position, so the connection marks itself unhealthy and closes its
socket before raising.

Usage
-----
>>> with Connection.open("localhost", 7878, "admin", "secret") as conn:
...     conn.use_space("docs")
...     conn.execute("put", space=conn.resolve_space(), key="a", value="1")
"""

from __future__ import annotations

import socket
import threading
import time
from typing import Any, Optional

from kvector_common import (
    AuthenticationError,
    ConnectionError,
    ErrorKind,
    InvariantViolation,
    KVectorError,
    ProtocolError,
    QueryError,
    error_class,
    get_logger,
)

from kvector_client import codec, commands
from kvector_client.metrics import REQUEST_COUNT, REQUEST_DURATION
from kvector_client.models import Command, Failure, Response, Success

logger = get_logger(__name__)

RECV_SIZE = 65536


def error_from_failure(
    failure: Failure,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> KVectorError:
    """Build the exception matching a Failure response.

    Args:
        failure: Decoded failure
        host: Server host for context
        port: Server port for context

    Returns:
        Exception instance of the class registered for ``failure.kind``
    """
    cls = error_class(failure.kind)
    return cls(failure.message, host=host, port=port, code=failure.code)


class Connection:
    """One authenticated socket with request/response semantics.

    Parameters
    ----------
    host : str
        Server host name or address
    port : int
        Server TCP port
    connect_timeout : float
        Seconds allowed for the TCP connect (default: 5.0)
    read_timeout : float
        Seconds allowed for each response (default: 30.0)

    Attributes
    ----------
    authenticated : bool
        True after a successful ``authenticate``
    username, role : str or None
        Identity and role granted by the server
    active_space : str or None
        Space selected with ``use_space``; used when operations omit one
    healthy : bool
        False once a transport or protocol failure was observed
    last_used : float
        ``time.monotonic()`` of the last completed request
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        self.authenticated = False
        self.username: Optional[str] = None
        self.role: Optional[str] = None
        self.active_space: Optional[str] = None
        self.healthy = True
        self.last_used = time.monotonic()

        self._sock: Optional[socket.socket] = None
        self._buffer = bytearray()
        self._request_id = 0
        self._closed = False
        self._in_flight = threading.Lock()

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ) -> "Connection":
        """Create, connect and authenticate a connection.

        The socket is closed if either step fails.

        Raises:
            ConnectionError: Cannot reach the server
            AuthenticationError: Credentials rejected
        """
        conn = cls(host, port, connect_timeout=connect_timeout, read_timeout=read_timeout)
        try:
            conn.connect()
            conn.authenticate(username, password)
        except BaseException:
            conn.close()
            raise
        return conn

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("open" if self._sock else "new")
        return (
            f"<Connection {self.host}:{self.port} {state} user={self.username!r} "
            f"space={self.active_space!r} healthy={self.healthy}>"
        )

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        """True once ``close`` ran, explicitly or after a failure."""
        return self._closed

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def idle_seconds(self) -> float:
        """Seconds since the last completed request (or since creation)."""
        return time.monotonic() - self.last_used

    def _context(self) -> dict[str, Any]:
        return {"host": self.host, "port": self.port}

    def connect(self) -> None:
        """Open the TCP socket.

        Raises:
            ConnectionError: Refused, unresolvable host, timeout, or connection closed
        """
        if self._closed:
            raise ConnectionError("Connection is closed", **self._context())
        if self._sock is not None:
            return

        address = (self.host, self.port)
        try:
            sock = socket.create_connection(address, timeout=self.connect_timeout)
        except socket.gaierror as e:
            raise ConnectionError(f"Cannot resolve host {self.host!r}: {e}", **self._context()) from e
        except socket.timeout as e:
            raise ConnectionError(
                f"Connect timed out after {self.connect_timeout}s", **self._context()
            ) from e
        except OSError as e:
            raise ConnectionError(f"Cannot connect: {e}", **self._context()) from e

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(self.read_timeout)
        self._sock = sock
        self.last_used = time.monotonic()
        logger.debug("connection_opened", host=self.host, port=self.port)

    def authenticate(self, username: str, password: str) -> Success:
        """Authenticate the session.

        Returns:
            Server response; ``payload["role"]`` holds the granted role

        Raises:
            AuthenticationError: Server rejected the credentials
            ConnectionError: Socket dropped during the handshake
        """
        command = Command(
            name=commands.AUTHENTICATE,
            arguments={"username": username, "password": password},
        )
        try:
            response = self.send(command)
        except QueryError as e:
            logger.warning(
                "authentication_failed",
                host=self.host,
                port=self.port,
                username=username,
                reason=e.message,
            )
            raise AuthenticationError(
                f"Authentication failed for user {username!r}: {e.message}",
                host=self.host,
                port=self.port,
                code=e.code,
            ) from e

        role = response.payload.get("role")
        self.authenticated = True
        self.username = username
        self.role = role if isinstance(role, str) else None
        logger.debug("authenticated", host=self.host, port=self.port, username=username, role=self.role)
        return response

    def send(self, command: Command, timeout: Optional[float] = None) -> Success:
        """Send one command and wait for its response.

        Args:
            command: Command to send
            timeout: Read timeout override for this request

        Returns:
            Successful response

        Raises:
            AuthenticationError: Connection not authenticated (no I/O performed)
            ConnectionError: Not connected, timeout, reset, or server closed the socket
            ProtocolError: Response could not be decoded or does not match the request
            QueryError: Server returned a failure
        """
        if self._closed or self._sock is None:
            state = "closed" if self._closed else "not connected"
            raise ConnectionError(f"Connection is {state}", **self._context())
        if command.name != commands.AUTHENTICATE and not self.authenticated:
            raise AuthenticationError(
                f"Cannot send {command.name!r}: connection is not authenticated",
                **self._context(),
            )

        response = self._roundtrip(command, timeout)
        if isinstance(response, Failure):
            raise error_from_failure(response, self.host, self.port)
        return response

    def execute(self, command_name: str, /, **arguments: Any) -> dict[str, Any]:
        """Send ``command_name`` with keyword arguments and return the payload."""
        return self.send(Command(name=command_name, arguments=arguments)).payload

    def _roundtrip(self, command: Command, timeout: Optional[float]) -> Response:
        """Write one request, read one response. Protocol failures raise."""
        if not self._in_flight.acquire(blocking=False):
            raise InvariantViolation(
                "Connection already has a request in flight; connections are not shareable",
                **self._context(),
            )

        status = "error"
        started = time.perf_counter()
        try:
            self._request_id += 1
            request_id = self._request_id
            data = codec.encode(command, request_id)

            frame = self._exchange(data, command.name, timeout)
            response = codec.decode(frame)

            if isinstance(response, Failure) and response.kind is ErrorKind.PROTOCOL:
                self._fail("undecodable_response")
                raise ProtocolError(response.message, **self._context())
            if response.request_id is not None and response.request_id != request_id:
                self._fail("response_id_mismatch")
                raise ProtocolError(
                    f"Response id {response.request_id} does not match request id {request_id}",
                    **self._context(),
                )

            self.last_used = time.monotonic()
            status = "ok" if response.ok else "failure"
            return response
        finally:
            self._in_flight.release()
            REQUEST_DURATION.labels(command=command.name, status=status).observe(
                time.perf_counter() - started
            )
            REQUEST_COUNT.labels(command=command.name, status=status).inc()

    def _exchange(self, data: bytes, command_name: str, timeout: Optional[float]) -> bytes:
        """Send ``data`` and block until one full frame is received."""
        sock = self._sock
        if sock is None:
            raise ConnectionError("Connection is not connected", **self._context())

        read_timeout = self.read_timeout if timeout is None else timeout
        deadline = time.monotonic() + read_timeout
        try:
            sock.settimeout(read_timeout)
            sock.sendall(data)
            while True:
                frame = codec.extract_frame(self._buffer)
                if frame is not None:
                    return frame
                # The timeout bounds the whole response, not each recv
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("response deadline elapsed")
                sock.settimeout(remaining)
                chunk = sock.recv(RECV_SIZE)
                if not chunk:
                    self._fail("closed_by_server")
                    raise ConnectionError("Connection closed by server", **self._context())
                self._buffer.extend(chunk)
        except socket.timeout as e:
            self._fail("timeout")
            raise ConnectionError(
                f"Timed out after {read_timeout}s waiting for response to {command_name!r}",
                **self._context(),
            ) from e
        except OSError as e:
            self._fail("socket_error")
            raise ConnectionError(f"Socket error during {command_name!r}: {e}", **self._context()) from e
        except ProtocolError as e:
            self._fail("oversized_response")
            e.host, e.port = self.host, self.port
            raise
        except ConnectionError:
            raise
        except BaseException:
            # Interrupted mid-exchange; a late response would desync the stream
            self._fail("interrupted")
            raise

    def _fail(self, reason: str) -> None:
        """Mark unhealthy and close; the stream can no longer be trusted."""
        logger.info("connection_failed", host=self.host, port=self.port, reason=reason)
        self.healthy = False
        self.close()

    def mark_unhealthy(self) -> None:
        """Flag the connection so a pool discards it on release."""
        self.healthy = False

    def use_space(self, name: str) -> Success:
        """Select the active space for this session.

        Raises:
            QueryError: Empty name or server rejected the space
        """
        if not name:
            raise QueryError("Space name must not be empty", **self._context())
        response = self.send(Command(name=commands.USE_SPACE, arguments={"name": name}))
        self.active_space = name
        return response

    def resolve_space(self, space: Optional[str] = None) -> str:
        """Return the explicit space, else the active one.

        Raises:
            QueryError: Neither is set; no request is sent
        """
        resolved = space if space is not None else self.active_space
        if not resolved:
            raise QueryError(
                "No space selected. Pass a space or call use_space() first.",
                **self._context(),
            )
        return resolved

    def ping(self, timeout: Optional[float] = None) -> bool:
        """Probe the server with a no-op command.

        A failure response still proves the server is alive. Transport or
        protocol failures return False and leave the connection closed.
        """
        if self._closed or self._sock is None:
            return False
        try:
            self.send(Command(name=commands.PING), timeout=timeout)
        except QueryError:
            return True
        except (ConnectionError, ProtocolError) as e:
            logger.info("ping_failed", host=self.host, port=self.port, error=str(e))
            return False
        return True

    def close(self) -> None:
        """Close the socket. Idempotent and safe on any cleanup path."""
        if self._closed:
            return
        self._closed = True
        self.authenticated = False
        sock, self._sock = self._sock, None
        self._buffer.clear()
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Peer already gone
            logger.debug("socket_shutdown_skipped", host=self.host, port=self.port, error=str(e))
        finally:
            sock.close()
        logger.debug("connection_closed", host=self.host, port=self.port)
