"""Newline-delimited JSON protocol between clients and the daemon.

Request:  {"type": "<request type>", "payload": {...}}
Response: {"type": "chunk" | "status" | "done" | "error", "data": "<string>"}

Every exchange ends with a "done" frame.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

MAX_FRAME_BYTES = 4 * 1024 * 1024


class ProtocolError(Exception):
    """Undecodable or structurally invalid frame."""


class RequestType(str, Enum):
    QUERY = "query"
    NEW_SESSION = "new-session"
    MEMORY_STORE = "memory-store"
    MEMORY_READ = "memory-read"
    MEMORY_SEARCH = "memory-search"
    MEMORY_DELETE = "memory-delete"
    MEMORY_UPDATE = "memory-update"
    ACTIVITY = "activity"
    ACTIVITY_FLUSH = "activity-flush"
    CONTEXT_UPDATE = "context-update"
    CONTEXT_READ = "context-read"
    CAPTURE = "capture"
    OUTPUT_READ = "output-read"
    STATUS = "status"
    PING = "ping"
    SHUTDOWN = "shutdown"


class ResponseType(str, Enum):
    CHUNK = "chunk"
    STATUS = "status"
    DONE = "done"
    ERROR = "error"


@dataclass
class Request:
    type: RequestType
    payload: dict[str, Any] = field(default_factory=dict)

    def get_str(self, name: str, default: str | None = None) -> str | None:
        value = self.payload.get(name, default)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)


@dataclass(frozen=True)
class Response:
    type: ResponseType
    data: str = ""

    @classmethod
    def chunk(cls, data: str) -> Response:
        return cls(ResponseType.CHUNK, data)

    @classmethod
    def status(cls, data: str) -> Response:
        return cls(ResponseType.STATUS, data)

    @classmethod
    def done(cls, data: str = "") -> Response:
        return cls(ResponseType.DONE, data)

    @classmethod
    def error(cls, data: str) -> Response:
        return cls(ResponseType.ERROR, data)


def parse_request(line: str | bytes) -> Request:
    """Decode one request frame. Raises ProtocolError for anything unusable."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        raise ProtocolError("Empty frame")

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        raise ProtocolError("Invalid JSON")

    if not isinstance(data, dict):
        raise ProtocolError("Request must be a JSON object")

    raw_type = data.get("type")
    try:
        request_type = RequestType(raw_type)
    except ValueError:
        raise ProtocolError(f"Unknown request type: {raw_type}")

    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ProtocolError("payload must be a JSON object")

    return Request(type=request_type, payload=payload)


def format_request(request_type: RequestType | str, payload: dict | None = None) -> bytes:
    """Encode a request frame (client side)."""
    frame = {"type": RequestType(request_type).value, "payload": payload or {}}
    return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")


def format_response(response: Response) -> bytes:
    frame = {"type": response.type.value, "data": response.data}
    return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")


def parse_response(line: str | bytes) -> Response:
    """Decode one response frame (client side)."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
        return Response(ResponseType(data["type"]), str(data.get("data", "")))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid response frame: {e}")
