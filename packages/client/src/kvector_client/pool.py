"""Connection pool for kvector clients.

Manages a bounded set of pre-authenticated connections shared by many
callers in one process.

Lifecycle of a pooled connection::

    Provisioning -> Idle <-> OnLoan -> (Idle | Retiring) -> Closed

All bookkeeping (idle deque, on-loan set, provisioning reservations, waiter
queue) is guarded by one lock. Socket I/O (connect, authenticate, probe,
close) never happens while the lock is held: capacity is reserved under the
lock and the slow work is done outside it.

Waiters queue FIFO, each blocked on its own event. A release hands the
connection straight to the head waiter, and a freed slot is granted to the
head waiter as a provisioning reservation, so newcomers cannot barge ahead
of callers already waiting.

Usage
-----
>>> config = PoolConfig(host="localhost", port=7878, username="admin", password="secret")
>>> with ConnectionPool(config) as pool:
...     with pool.client() as client:
...         client.put("k", "v", space="kv")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from kvector_common import (
    InvariantViolation,
    KVectorError,
    PoolExhaustedError,
    Settings,
    get_logger,
    get_settings,
)

from kvector_client.client import Client
from kvector_client.connection import Connection
from kvector_client.metrics import (
    POOL_ACQUIRE_WAIT,
    POOL_CONNECTIONS_CREATED,
    POOL_CONNECTIONS_DISCARDED,
    POOL_EXHAUSTED,
)
from kvector_client.models import PoolConfig, PoolStats

logger = get_logger(__name__)


class _Waiter:
    """One blocked acquirer. Outcome fields are written under the pool lock."""

    __slots__ = ("event", "connection", "reserved", "closed")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.connection: Optional[Connection] = None
        self.reserved = False
        self.closed = False


class ConnectionPool:
    """Bounded pool of authenticated connections.

    ``min_size`` connections are opened synchronously by the constructor; if
    any of them fails, those already opened are closed and the error
    propagates.

    Parameters
    ----------
    config : PoolConfig
        Server address, credentials, sizing and timeouts

    Raises
    ------
    ConnectionError
        Server unreachable during initialization
    AuthenticationError
        Credentials rejected during initialization
    """

    def __init__(self, config: PoolConfig) -> None:
        self.config = config

        self._lock = threading.Lock()
        self._idle: deque[Connection] = deque()
        self._on_loan: set[Connection] = set()
        self._probing: set[Connection] = set()
        self._provisioning = 0
        self._waiters: deque[_Waiter] = deque()
        self._total_created = 0
        self._closed = False

        self._initialize()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> "ConnectionPool":
        """Create a pool from environment settings (default: ``get_settings()``)."""
        return cls(PoolConfig.from_settings(settings or get_settings(), **overrides))

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<ConnectionPool {self.config.host}:{self.config.port} "
            f"min={self.config.min_size} max={self.config.max_size} closed={self._closed}>"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _context(self) -> dict[str, Any]:
        return {"host": self.config.host, "port": self.config.port}

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def _open_connection(self) -> Connection:
        """Connect and authenticate one connection with the pool credentials."""
        cfg = self.config
        conn = Connection.open(
            cfg.host,
            cfg.port,
            cfg.username,
            cfg.password,
            connect_timeout=cfg.connect_timeout,
            read_timeout=cfg.read_timeout,
        )
        POOL_CONNECTIONS_CREATED.inc()
        return conn

    def _initialize(self) -> None:
        created: list[Connection] = []
        try:
            for _ in range(self.config.min_size):
                created.append(self._open_connection())
        except Exception as e:
            logger.error(
                "pool_initialization_failed",
                created=len(created),
                error=str(e),
                **self._context(),
            )
            for conn in created:
                conn.close()
            raise

        with self._lock:
            self._idle.extend(created)
            self._total_created += len(created)

        logger.info(
            "pool_initialized",
            min_size=self.config.min_size,
            max_size=self.config.max_size,
            **self._context(),
        )

    def _provision_reserved(self) -> Connection:
        """Open a connection for the caller using an already reserved slot."""
        try:
            conn = self._open_connection()
        except BaseException:
            with self._lock:
                self._provisioning -= 1
                self._grant_slot_locked()
            raise

        with self._lock:
            self._provisioning -= 1
            closed = self._closed
            if not closed:
                self._total_created += 1
                self._on_loan.add(conn)

        if closed:
            conn.close()
            raise InvariantViolation("Connection pool closed during acquire", **self._context())
        return conn

    def _provision_idle(self) -> None:
        """Background replacement: open a connection and return it to the pool."""
        try:
            conn = self._open_connection()
        except Exception as e:
            logger.warning("pool_replenish_failed", error=str(e), **self._context())
            with self._lock:
                self._provisioning -= 1
                self._grant_slot_locked()
            return

        with self._lock:
            self._provisioning -= 1
            closed = self._closed
            if not closed:
                self._total_created += 1
                self._return_locked(conn)

        if closed:
            conn.close()
        else:
            logger.debug("pool_replenished", **self._context())

    def _replenish(self, count: int) -> None:
        for _ in range(count):
            thread = threading.Thread(
                target=self._provision_idle,
                name="kvector-pool-replenish",
                daemon=True,
            )
            thread.start()

    # ------------------------------------------------------------------
    # Locked helpers (caller holds self._lock)
    # ------------------------------------------------------------------

    def _size_locked(self) -> int:
        return len(self._idle) + len(self._on_loan) + len(self._probing) + self._provisioning

    def _return_locked(self, conn: Connection) -> None:
        """Hand ``conn`` to the head waiter, or park it as idle."""
        if self._waiters:
            waiter = self._waiters.popleft()
            waiter.connection = conn
            self._on_loan.add(conn)
            waiter.event.set()
        else:
            self._idle.append(conn)

    def _grant_slot_locked(self) -> bool:
        """Give free capacity to the head waiter as a provisioning reservation."""
        if not self._waiters or self._closed or self._size_locked() >= self.config.max_size:
            return False
        waiter = self._waiters.popleft()
        waiter.reserved = True
        self._provisioning += 1
        waiter.event.set()
        return True

    def _after_discard_locked(self) -> int:
        """Reuse capacity freed by a discard; returns replacements to start."""
        if self._closed or self._grant_slot_locked():
            return 0
        deficit = self.config.min_size - self._size_locked()
        if deficit <= 0:
            return 0
        self._provisioning += deficit
        return deficit

    def _retire_idle_locked(self) -> list[Connection]:
        """Pop the longest-idle connections while the pool is above min_size."""
        retired: list[Connection] = []
        max_idle = self.config.max_idle
        if max_idle is None:
            return retired
        while (
            self._idle
            and self._size_locked() > self.config.min_size
            and self._idle[0].idle_seconds() > max_idle
        ):
            retired.append(self._idle.popleft())
        return retired

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self, timeout: Optional[float] = None) -> Connection:
        """Borrow a connection.

        Args:
            timeout: Max seconds to wait (default: ``config.acquire_timeout``)

        Returns:
            Authenticated connection, exclusively owned until ``release``

        Raises:
            PoolExhaustedError: Nothing became available in time
            ConnectionError: On-demand provisioning could not connect
            AuthenticationError: On-demand provisioning was rejected
            InvariantViolation: Pool is closed
        """
        timeout = self.config.acquire_timeout if timeout is None else timeout
        started = time.monotonic()
        deadline = started + timeout

        while True:
            conn: Optional[Connection] = None
            waiter: Optional[_Waiter] = None
            provision = False

            with self._lock:
                if self._closed:
                    raise InvariantViolation("Connection pool is closed", **self._context())
                if self._idle:
                    # Most recently used first; the oldest drift left and retire
                    conn = self._idle.pop()
                    self._on_loan.add(conn)
                elif self._size_locked() < self.config.max_size:
                    self._provisioning += 1
                    provision = True
                else:
                    waiter = _Waiter()
                    self._waiters.append(waiter)

            if waiter is not None:
                conn = self._wait(waiter, deadline, timeout)
                provision = conn is None

            if provision:
                conn = self._provision_reserved()
                return self._handed_out(conn, started)

            assert conn is not None
            if self._usable(conn):
                return self._handed_out(conn, started)
            self._discard(conn, "failed_probe")

    def _wait(self, waiter: _Waiter, deadline: float, timeout: float) -> Optional[Connection]:
        """Block until handed a connection (returned) or a slot (None)."""
        remaining = deadline - time.monotonic()
        if remaining > 0:
            waiter.event.wait(remaining)

        with self._lock:
            if waiter.connection is not None:
                return waiter.connection
            if waiter.reserved:
                return None
            if waiter.closed:
                raise InvariantViolation("Connection pool closed while waiting", **self._context())
            self._waiters.remove(waiter)
            waiting = len(self._waiters)
            in_use = len(self._on_loan)

        POOL_EXHAUSTED.inc()
        logger.warning(
            "pool_exhausted",
            timeout=timeout,
            on_loan=in_use,
            waiting=waiting,
            max_size=self.config.max_size,
            **self._context(),
        )
        raise PoolExhaustedError(
            f"No connection available within {timeout}s (max_size={self.config.max_size})",
            **self._context(),
        )

    def _usable(self, conn: Connection) -> bool:
        """Probe connections idle longer than stale_after. Caller owns ``conn``."""
        if not conn.closed and conn.healthy and conn.idle_seconds() <= self.config.stale_after:
            return True
        return self._probe(conn)

    def _handed_out(self, conn: Connection, started: float) -> Connection:
        waited = time.monotonic() - started
        POOL_ACQUIRE_WAIT.observe(waited)
        logger.debug("connection_acquired", waited=round(waited, 4), **self._context())
        return conn

    def _discard(self, conn: Connection, reason: str) -> None:
        """Drop an on-loan connection owned by the caller and backfill capacity."""
        with self._lock:
            self._on_loan.discard(conn)
            replacements = self._after_discard_locked()
        self._close_connection(conn, reason)
        self._replenish(replacements)

    def _close_connection(self, conn: Connection, reason: str) -> None:
        conn.close()
        POOL_CONNECTIONS_DISCARDED.labels(reason=reason).inc()
        logger.info("connection_discarded", reason=reason, **self._context())

    def release(self, conn: Connection) -> None:
        """Return a borrowed connection.

        Unhealthy or closed connections are discarded and replaced up to
        ``min_size``. After ``close()`` every released connection is closed.

        Raises:
            InvariantViolation: ``conn`` is not on loan from this pool
        """
        retired: list[Connection] = []
        replacements = 0
        reason: Optional[str] = None

        with self._lock:
            if conn not in self._on_loan:
                raise InvariantViolation(
                    f"Cannot release {conn!r}: not on loan from this pool", **self._context()
                )
            self._on_loan.discard(conn)
            if self._closed:
                reason = "pool_closed"
            elif conn.closed or not conn.healthy:
                reason = "unhealthy"
                replacements = self._after_discard_locked()
            else:
                self._return_locked(conn)
                retired = self._retire_idle_locked()

        if reason is not None:
            self._close_connection(conn, reason)
        for idle_conn in retired:
            self._close_connection(idle_conn, "idle_timeout")
        self._replenish(replacements)

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Connection]:
        """Borrow a connection for the duration of a ``with`` block.

        Examples
        --------
        >>> with pool.connection() as conn:
        ...     conn.execute("ping")
        """
        conn = self.acquire(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    @contextmanager
    def client(self, timeout: Optional[float] = None) -> Iterator[Client]:
        """Borrow a connection wrapped in a ``Client``."""
        with self.connection(timeout) as conn:
            yield Client(conn, owns_connection=False)

    def check_idle(self) -> int:
        """Probe every idle connection now.

        Idle connections are taken out of the idle set while probed, so no
        acquirer can be handed one mid-probe. Failed ones are discarded and
        replaced up to ``min_size``.

        Returns:
            Number of connections discarded
        """
        with self._lock:
            if self._closed:
                return 0
            candidates = list(self._idle)
            self._idle.clear()
            self._probing.update(candidates)

        discarded = 0
        for conn in candidates:
            alive = self._probe(conn)
            reason: Optional[str] = None
            replacements = 0
            with self._lock:
                self._probing.discard(conn)
                if self._closed:
                    reason = "pool_closed"
                elif alive:
                    self._return_locked(conn)
                else:
                    reason = "failed_probe"
                    replacements = self._after_discard_locked()
            if reason is not None:
                self._close_connection(conn, reason)
                if reason == "failed_probe":
                    discarded += 1
            self._replenish(replacements)

        with self._lock:
            retired = self._retire_idle_locked()
        for conn in retired:
            self._close_connection(conn, "idle_timeout")

        logger.debug("idle_check_complete", probed=len(candidates), discarded=discarded)
        return discarded

    def _probe(self, conn: Connection) -> bool:
        if conn.closed or not conn.healthy:
            return False
        try:
            return conn.ping(timeout=self.config.probe_timeout)
        except KVectorError as e:
            logger.info("probe_failed", error=str(e), **self._context())
            return False

    def stats(self) -> PoolStats:
        """Snapshot of pool counters, taken under the pool lock."""
        with self._lock:
            idle = len(self._idle) + len(self._probing)
            on_loan = len(self._on_loan)
            return PoolStats(
                pool_size=idle + on_loan,
                active_connections=on_loan,
                idle_connections=idle,
                min_size=self.config.min_size,
                max_size=self.config.max_size,
                waiting_acquirers=len(self._waiters),
                total_created=self._total_created,
            )

    get_stats = stats

    def close(self) -> None:
        """Close the pool. Idempotent.

        Idle connections close now; connections on loan close when released.
        Blocked acquirers fail with InvariantViolation.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            waiters = list(self._waiters)
            self._waiters.clear()
            for waiter in waiters:
                waiter.closed = True
                waiter.event.set()
            on_loan = len(self._on_loan)

        for conn in idle:
            self._close_connection(conn, "pool_closed")

        logger.info(
            "pool_closed",
            closed_idle=len(idle),
            still_on_loan=on_loan,
            woken_waiters=len(waiters),
            **self._context(),
        )
