"""Pytest fixtures for client tests.

Provides an in-process fake kvector server speaking newline-delimited
JSON-RPC 2.0 over TCP, with hooks for fault injection.
"""

from __future__ import annotations

import json
import math
import socket
import threading
import time
from typing import Any, Callable

import pytest

from kvector_client import PoolConfig

USERS = {
    "admin": ("secret", "admin"),
    "reader": ("reader-pw", "user"),
}

# Sentinel: handler wants the server to never answer this request
STALL = object()
# Sentinel: handler wants the server to close the socket instead of answering
DROP = object()


class _Trickle:
    """Reply sent one byte at a time, `delay` seconds apart."""

    def __init__(self, data: bytes, delay: float) -> None:
        self.data = data
        self.delay = delay


def _result(request_id: Any, result: Any) -> bytes:
    return json.dumps({"jsonrpc": "2.0", "result": result, "id": request_id}).encode() + b"\n"


def _error(request_id: Any, code: int, message: str) -> bytes:
    return (
        json.dumps(
            {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id}
        ).encode()
        + b"\n"
    )


class FakeServer:
    """Threaded fake server.

    Attributes:
        requests: Every decoded request, in arrival order
        overrides: method -> callable(request) returning a result object,
            raw bytes to send verbatim, STALL, or DROP
        accepted: Number of accepted TCP connections
    """

    def __init__(self) -> None:
        self.users = dict(USERS)
        self.spaces: dict[str, dict[str, Any]] = {}
        self.requests: list[dict[str, Any]] = []
        self.overrides: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self.accepted = 0

        self._lock = threading.Lock()
        self._clients: list[socket.socket] = []
        self._stop = threading.Event()
        self._srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._srv.bind(("127.0.0.1", 0))
        self._srv.listen(64)
        self._srv.settimeout(0.1)
        self.host, self.port = self._srv.getsockname()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)

    def start(self) -> "FakeServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2.0)
        self.drop_all_connections()
        self._srv.close()

    def stall(self, method: str) -> None:
        """Never answer ``method``."""
        self.overrides[method] = lambda request: STALL

    def drop_on(self, method: str) -> None:
        """Close the socket when ``method`` arrives."""
        self.overrides[method] = lambda request: DROP

    def reply_raw(self, method: str, payload: bytes) -> None:
        """Answer ``method`` with ``payload`` verbatim."""
        self.overrides[method] = lambda request: payload

    def trickle(self, method: str, result: Any, delay: float) -> None:
        """Answer ``method`` with ``result``, dripping one byte every ``delay`` seconds."""
        self.overrides[method] = lambda request: _Trickle(_result(request.get("id"), result), delay)

    def methods(self) -> list[str]:
        with self._lock:
            return [r.get("method") for r in self.requests]

    def drop_all_connections(self) -> None:
        """Close every client socket from the server side."""
        with self._lock:
            clients, self._clients = self._clients, []
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._srv.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with self._lock:
                self._clients.append(conn)
                self.accepted += 1
            threading.Thread(target=self._serve_client, args=(conn,), daemon=True).start()

    def _serve_client(self, conn: socket.socket) -> None:
        session: dict[str, Any] = {"user": None}
        buffer = bytearray()
        try:
            while not self._stop.is_set():
                chunk = conn.recv(65536)
                if not chunk:
                    return
                buffer.extend(chunk)
                while b"\n" in buffer:
                    end = buffer.index(b"\n")
                    line = bytes(buffer[:end])
                    del buffer[: end + 1]
                    reply = self._handle(line, session)
                    if reply is DROP:
                        conn.shutdown(socket.SHUT_RDWR)
                        conn.close()
                        return
                    if isinstance(reply, _Trickle):
                        for i in range(len(reply.data)):
                            if self._stop.is_set():
                                return
                            conn.sendall(reply.data[i : i + 1])
                            time.sleep(reply.delay)
                    elif reply is not STALL:
                        conn.sendall(reply)
        except OSError:
            return

    def _handle(self, line: bytes, session: dict[str, Any]) -> Any:
        try:
            request = json.loads(line.decode("utf-8"))
        except ValueError as e:
            return _error(None, -32700, f"Parse error: {e}")

        with self._lock:
            self.requests.append(request)
        method = request.get("method")
        params = request.get("params") or {}
        request_id = request.get("id")

        override = self.overrides.get(method)
        if override is not None:
            out = override(request)
            if out is STALL or out is DROP or isinstance(out, (bytes, _Trickle)):
                return out
            return _result(request_id, out)

        if method == "authenticate":
            user = self.users.get(params.get("username"))
            if user is None or user[0] != params.get("password"):
                return _error(request_id, 401, "Invalid username or password")
            session["user"] = params["username"]
            return _result(request_id, {"role": user[1]})

        if session["user"] is None:
            return _error(request_id, 403, "Not authenticated")

        handler = getattr(self, f"_cmd_{method}", None)
        if handler is None:
            return _error(request_id, -32601, f"Method not found: {method}")
        try:
            return _result(request_id, handler(params))
        except KeyError as e:
            return _error(request_id, 404, f"Not found: {e.args[0]}")
        except ValueError as e:
            return _error(request_id, 400, str(e))

    # -- commands --------------------------------------------------------

    def _cmd_ping(self, params: dict[str, Any]) -> Any:
        return {"pong": True}

    def _cmd_echo(self, params: dict[str, Any]) -> Any:
        return params

    def _space(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("space") or params.get("name")
        if name not in self.spaces:
            raise KeyError(f"space {name}")
        return self.spaces[name]

    def _cmd_useSpace(self, params: dict[str, Any]) -> Any:
        self._space(params)
        return {"space": params["name"]}

    def _cmd_createSpace(self, params: dict[str, Any]) -> Any:
        name = params["name"]
        if name in self.spaces:
            raise ValueError(f"Space {name} already exists")
        self.spaces[name] = {
            "dimension": params["dimension"],
            "indexType": params["indexType"],
            "metric": params["metric"],
            "kv": {},
            "vectors": {},
        }
        return {"created": name}

    def _cmd_dropSpace(self, params: dict[str, Any]) -> Any:
        self._space(params)
        del self.spaces[params["name"]]
        return {"dropped": params["name"]}

    def _cmd_listSpaces(self, params: dict[str, Any]) -> Any:
        return {"spaces": sorted(self.spaces)}

    def _cmd_describeSpace(self, params: dict[str, Any]) -> Any:
        space = self._space(params)
        return {
            "name": params["name"],
            "dimension": space["dimension"],
            "indexType": space["indexType"],
            "metric": space["metric"],
            "count": len(space["vectors"]),
        }

    def _cmd_put(self, params: dict[str, Any]) -> Any:
        self._space(params)["kv"][params["key"]] = params["value"]
        return {"stored": params["key"]}

    def _cmd_get(self, params: dict[str, Any]) -> Any:
        kv = self._space(params)["kv"]
        if params["key"] not in kv:
            return {}
        return {"value": kv[params["key"]]}

    def _cmd_delete(self, params: dict[str, Any]) -> Any:
        kv = self._space(params)["kv"]
        return {"deleted": kv.pop(params["key"], None) is not None}

    def _cmd_insertVector(self, params: dict[str, Any]) -> Any:
        space = self._space(params)
        vector = params["vector"]
        if len(vector) != space["dimension"]:
            raise ValueError(f"Expected dimension {space['dimension']}, got {len(vector)}")
        vector_id = params.get("id", len(space["vectors"]) + 1)
        space["vectors"][vector_id] = {"vector": vector, "metadata": params.get("metadata")}
        return {"id": vector_id}

    def _distances(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        space = self._space(params)
        query = params["vector"]
        hits = [
            {"id": vid, "distance": math.dist(query, entry["vector"])}
            for vid, entry in space["vectors"].items()
        ]
        return sorted(hits, key=lambda hit: hit["distance"])

    def _cmd_searchTopk(self, params: dict[str, Any]) -> Any:
        return {"results": self._distances(params)[: params["k"]]}

    def _cmd_searchRange(self, params: dict[str, Any]) -> Any:
        return {"results": [h for h in self._distances(params) if h["distance"] <= params["radius"]]}

    def _cmd_getVector(self, params: dict[str, Any]) -> Any:
        entry = self._space(params)["vectors"][params["id"]]
        return {"id": params["id"], **entry}

    def _cmd_deleteVector(self, params: dict[str, Any]) -> Any:
        del self._space(params)["vectors"][params["id"]]
        return {"deleted": params["id"]}

    def _cmd_createUser(self, params: dict[str, Any]) -> Any:
        self.users[params["username"]] = (params["password"], params["role"])
        return {"created": params["username"]}

    def _cmd_dropUser(self, params: dict[str, Any]) -> Any:
        del self.users[params["username"]]
        return {"dropped": params["username"]}

    def _cmd_changePassword(self, params: dict[str, Any]) -> Any:
        _, role = self.users[params["username"]]
        self.users[params["username"]] = (params["password"], role)
        return {"updated": params["username"]}

    def _cmd_listUsers(self, params: dict[str, Any]) -> Any:
        return {"users": sorted(self.users)}


@pytest.fixture
def server():
    """Running fake server, stopped after the test."""
    srv = FakeServer().start()
    yield srv
    srv.stop()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def make_pool_config(server):
    """Factory for pool configs pointing at the fake server."""

    def factory(**overrides: Any) -> PoolConfig:
        values: dict[str, Any] = {
            "host": server.host,
            "port": server.port,
            "username": "admin",
            "password": "secret",
            "connect_timeout": 1.0,
            "read_timeout": 2.0,
            "min_size": 1,
            "max_size": 3,
            "acquire_timeout": 1.0,
            "probe_timeout": 0.5,
        }
        values.update(overrides)
        return PoolConfig(**values)

    return factory

