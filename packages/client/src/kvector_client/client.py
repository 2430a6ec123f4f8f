"""Typed operation surface over one Connection.

Each method sends exactly one command and returns the server's result
object. Errors from the connection propagate unchanged and nothing is
retried: operations such as ``put`` and ``insert_vector`` are not
idempotent.

Usage
-----
>>> from kvector_client import Client
>>> with Client.connect("localhost", 7878, "admin", "secret") as client:
...     client.create_space("docs", dimension=3)
...     client.use_space("docs")
...     client.insert_vector([0.1, 0.2, 0.3], vector_id=1)
...     hits = client.search_topk([0.1, 0.2, 0.3], k=5)
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from kvector_common import QueryError

from kvector_client import commands
from kvector_client.connection import Connection
from kvector_client.models import Command, Success

Vector = Sequence[float]


def _drop_none(arguments: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in arguments.items() if value is not None}


class Client:
    """Client for a kvector server bound to one connection.

    Parameters
    ----------
    connection : Connection
        Connected (and usually authenticated) connection. The client does
        not own pooled connections; use ``ConnectionPool.client()`` for those.
    owns_connection : bool
        Close the connection when the client is closed (default: True)

    Examples
    --------
    >>> pool = ConnectionPool(config)
    >>> with pool.client() as client:
    ...     client.put("greeting", "hello", space="kv")
    """

    def __init__(self, connection: Connection, *, owns_connection: bool = True) -> None:
        self.connection = connection
        self.owns_connection = owns_connection

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ) -> "Client":
        """Open a standalone authenticated connection and wrap it."""
        conn = Connection.open(
            host,
            port,
            username,
            password,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )
        return cls(conn)

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection if this client owns it."""
        if self.owns_connection:
            self.connection.close()

    @property
    def active_space(self) -> Optional[str]:
        return self.connection.active_space

    @property
    def role(self) -> Optional[str]:
        return self.connection.role

    def _call(self, name: str, /, **arguments: Any) -> dict[str, Any]:
        return self.connection.send(Command(name=name, arguments=_drop_none(arguments))).payload

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> Success:
        return self.connection.authenticate(username, password)

    def ping(self) -> dict[str, Any]:
        return self._call(commands.PING)

    def use_space(self, name: str) -> Success:
        """Select the space used when later calls omit ``space``."""
        return self.connection.use_space(name)

    # ------------------------------------------------------------------
    # Spaces
    # ------------------------------------------------------------------

    def create_space(
        self,
        name: str,
        dimension: int,
        index_type: str = commands.DEFAULT_INDEX_TYPE,
        metric: str = commands.DEFAULT_METRIC,
        parameters: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create a space.

        Args:
            name: Space name
            dimension: Vector dimension, >= 1
            index_type: Server index type, passed through as-is (default: "Flat")
            metric: Distance metric, passed through as-is (default: "L2")
            parameters: Extra index parameters for the server

        Raises:
            QueryError: Invalid dimension, or server rejected the space
        """
        if isinstance(dimension, bool) or not isinstance(dimension, int) or dimension < 1:
            raise QueryError(
                f"dimension must be a positive integer, got {dimension!r}",
                host=self.connection.host,
                port=self.connection.port,
            )
        return self._call(
            commands.CREATE_SPACE,
            name=name,
            dimension=dimension,
            indexType=index_type,
            metric=metric,
            parameters=parameters,
        )

    def drop_space(self, name: str) -> dict[str, Any]:
        payload = self._call(commands.DROP_SPACE, name=name)
        if self.connection.active_space == name:
            self.connection.active_space = None
        return payload

    def list_spaces(self) -> list[Any]:
        payload = self._call(commands.LIST_SPACES)
        return payload.get("spaces", payload.get("value", []))

    def describe_space(self, name: Optional[str] = None) -> dict[str, Any]:
        return self._call(commands.DESCRIBE_SPACE, name=self.connection.resolve_space(name))

    # ------------------------------------------------------------------
    # Key-value
    # ------------------------------------------------------------------

    def put(self, key: str, value: Any, space: Optional[str] = None) -> dict[str, Any]:
        return self._call(
            commands.PUT, space=self.connection.resolve_space(space), key=key, value=value
        )

    def get(self, key: str, space: Optional[str] = None) -> Any:
        """Return the stored value, or None when the server reports no value."""
        payload = self._call(commands.GET, space=self.connection.resolve_space(space), key=key)
        return payload.get("value")

    def delete(self, key: str, space: Optional[str] = None) -> dict[str, Any]:
        return self._call(commands.DELETE, space=self.connection.resolve_space(space), key=key)

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    def insert_vector(
        self,
        vector: Vector,
        vector_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        space: Optional[str] = None,
    ) -> dict[str, Any]:
        """Insert one vector; the server assigns an id when none is given."""
        return self._call(
            commands.INSERT_VECTOR,
            space=self.connection.resolve_space(space),
            vector=vector,
            id=vector_id,
            metadata=metadata,
        )

    def search_topk(
        self,
        vector: Vector,
        k: int = commands.DEFAULT_TOPK,
        space: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return the ``k`` nearest neighbours of ``vector``.

        Raises:
            QueryError: ``k`` < 1 (no request sent), or server failure
        """
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise QueryError(
                f"k must be a positive integer, got {k!r}",
                host=self.connection.host,
                port=self.connection.port,
            )
        return self._call(
            commands.SEARCH_TOPK,
            space=self.connection.resolve_space(space),
            vector=vector,
            k=k,
        )

    def search_range(
        self,
        vector: Vector,
        radius: float,
        space: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return every vector within ``radius`` of ``vector``."""
        return self._call(
            commands.SEARCH_RANGE,
            space=self.connection.resolve_space(space),
            vector=vector,
            radius=radius,
        )

    def get_vector(self, vector_id: int, space: Optional[str] = None) -> dict[str, Any]:
        return self._call(
            commands.GET_VECTOR, space=self.connection.resolve_space(space), id=vector_id
        )

    def delete_vector(self, vector_id: int, space: Optional[str] = None) -> dict[str, Any]:
        return self._call(
            commands.DELETE_VECTOR, space=self.connection.resolve_space(space), id=vector_id
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: str, role: str = "user") -> dict[str, Any]:
        return self._call(commands.CREATE_USER, username=username, password=password, role=role)

    def drop_user(self, username: str) -> dict[str, Any]:
        return self._call(commands.DROP_USER, username=username)

    def change_password(self, username: str, password: str) -> dict[str, Any]:
        return self._call(commands.CHANGE_PASSWORD, username=username, password=password)

    def list_users(self) -> list[Any]:
        payload = self._call(commands.LIST_USERS)
        return payload.get("users", payload.get("value", []))
