"""Wire codec: newline-delimited JSON-RPC 2.0.

Protocol:
    One JSON object per line, UTF-8 encoded.

    Request:
        {"jsonrpc": "2.0", "method": "searchTopk", "params": {"space": "s", "k": 3}, "id": 7}

    Response:
        {"jsonrpc": "2.0", "result": {...}, "id": 7}

    Error:
        {"jsonrpc": "2.0", "error": {"code": -32000, "message": "..."}, "id": 7}

JSON escapes newlines and control characters inside strings, so the line
delimiter never occurs inside a message. ``decode`` never raises: anything
it cannot interpret becomes a ``Failure`` with ``ErrorKind.PROTOCOL``.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from kvector_common import ErrorKind, ProtocolError

from kvector_client.models import Command, Failure, Response, Success

JSONRPC_VERSION = "2.0"
DELIMITER = b"\n"

# Largest accepted frame
MAX_MESSAGE_SIZE = 64 * 1024 * 1024


def encode(command: Command, request_id: int) -> bytes:
    """Serialize a command into one framed request.

    Args:
        command: Command to send
        request_id: Id echoed back by the server

    Returns:
        UTF-8 JSON followed by the delimiter

    Raises:
        ProtocolError: If the command cannot be serialized
    """
    request = {
        "jsonrpc": JSONRPC_VERSION,
        "method": command.name,
        "params": command.arguments,
        "id": request_id,
    }
    try:
        body = json.dumps(request, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Cannot encode command {command.name!r}: {e}") from e
    return body.encode("utf-8") + DELIMITER


def _protocol_failure(message: str, request_id: Optional[int] = None) -> Failure:
    return Failure(kind=ErrorKind.PROTOCOL, message=message, request_id=request_id)


def decode(data: bytes) -> Response:
    """Parse exactly one framed response.

    Args:
        data: One message, with or without the trailing delimiter

    Returns:
        ``Success`` or ``Failure``
    """
    if data.endswith(DELIMITER):
        data = data[: -len(DELIMITER)]
    if not data.strip():
        return _protocol_failure("Empty response")

    try:
        message = json.loads(data.decode("utf-8"))
    except UnicodeDecodeError as e:
        return _protocol_failure(f"Response is not valid UTF-8: {e}")
    except json.JSONDecodeError as e:
        return _protocol_failure(f"Malformed response: {e}")
    except (ValueError, RecursionError) as e:
        # Oversized integer literals or nesting deeper than the parser allows
        return _protocol_failure(f"Unparseable response: {type(e).__name__}: {e}")

    if not isinstance(message, dict):
        return _protocol_failure(f"Response must be an object, got {type(message).__name__}")

    request_id = message.get("id")
    if request_id is not None and (isinstance(request_id, bool) or not isinstance(request_id, int)):
        return _protocol_failure(f"Invalid response id: {request_id!r}")

    error = message.get("error")
    if error is not None:
        return _decode_error(error, request_id)

    result = message.get("result")
    if result is None:
        payload: dict[str, Any] = {}
    elif isinstance(result, dict):
        payload = result
    else:
        payload = {"value": result}

    return Success(payload=payload, request_id=request_id)


def _decode_error(error: Any, request_id: Optional[int]) -> Failure:
    """Convert the JSON-RPC ``error`` member to a Failure."""
    if isinstance(error, str):
        return Failure(kind=ErrorKind.QUERY, message=error, request_id=request_id)
    if not isinstance(error, dict):
        return _protocol_failure(f"Malformed error member: {error!r}", request_id)

    code = error.get("code")
    if code is not None and (isinstance(code, bool) or not isinstance(code, int)):
        code = None
    message = error.get("message")
    if not isinstance(message, str) or not message:
        message = "Server returned an error without a message"

    return Failure(kind=ErrorKind.QUERY, message=message, code=code, request_id=request_id)


def extract_frame(buffer: bytearray) -> Optional[bytes]:
    """Remove and return one complete frame from a receive buffer.

    Args:
        buffer: Bytes received so far; consumed in place

    Returns:
        The frame without its delimiter, or None if no full frame is buffered

    Raises:
        ProtocolError: If the buffered frame exceeds MAX_MESSAGE_SIZE
    """
    end = buffer.find(DELIMITER)
    if end < 0:
        if len(buffer) > MAX_MESSAGE_SIZE:
            raise ProtocolError(f"Response exceeds {MAX_MESSAGE_SIZE} bytes without delimiter")
        return None
    if end > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"Response of {end} bytes exceeds {MAX_MESSAGE_SIZE} bytes")
    frame = bytes(buffer[:end])
    del buffer[: end + len(DELIMITER)]
    return frame
