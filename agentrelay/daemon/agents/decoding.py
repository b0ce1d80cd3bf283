"""Wire decoding shared by the agent adapters.

Turns raw frames -- subprocess stdout lines, SSE ``data:`` payloads,
JSON-RPC lines -- into validated native-event models.  Every failure is
raised as ``DecodeError`` with a location so the normalizer can surface it
as ``agent.unparsed`` without advancing any item.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from pydantic import TypeAdapter, ValidationError

from agentrelay.daemon.errors import DecodeError

T = TypeVar("T")


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def parse_json_line(frame: str) -> Any:
    """Parse one JSON frame, mapping syntax errors to ``DecodeError``."""
    try:
        return json.loads(frame)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"invalid JSON: {exc.msg}", f"line {exc.lineno}, column {exc.colno}") from None


def format_location(loc: tuple[int | str, ...]) -> str:
    """Render a pydantic error location as a JSON path (``$.a.b[0]``)."""
    path = "$"
    for part in loc:
        path += f"[{part}]" if isinstance(part, int) else f".{part}"
    return path


def validate(adapter: TypeAdapter[T], payload: Any) -> T:
    """Validate ``payload`` against a native schema."""
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise DecodeError(first["msg"], format_location(tuple(first["loc"]))) from None


def raw_hash(frame: str) -> str:
    """Stable fingerprint of a raw frame for ``agent.unparsed`` events."""
    return hashlib.sha256(frame.encode("utf-8", errors="replace")).hexdigest()


def event_type_of(payload: Any, key: str = "type") -> str:
    """Best-effort type tag for logging; never raises."""
    if isinstance(payload, dict):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return "unknown"


# ---------------------------------------------------------------------------
# Server-sent events
# ---------------------------------------------------------------------------


@dataclass
class SSEFrame:
    event: str | None
    data: str
    id: str | None = None


@dataclass
class SSEDecoder:
    """Incremental SSE decoder fed one line at a time.

    Format: ``event: <type>`` / ``data: <payload>`` / ``id: <id>`` lines,
    terminated by a blank line.  Comment lines (``:``) are ignored.
    """

    _event: str | None = None
    _id: str | None = None
    _data: list[str] = field(default_factory=list)

    def feed(self, line: str) -> SSEFrame | None:
        line = line.rstrip("\r\n")
        if not line:
            if not self._data:
                self._event = None
                return None
            frame = SSEFrame(event=self._event, data="\n".join(self._data), id=self._id)
            self._event, self._id, self._data = None, None, []
            return frame
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None


# ---------------------------------------------------------------------------
# JSON-RPC 2.0
# ---------------------------------------------------------------------------


JsonRpcKind = Literal["request", "response", "notification"]


def classify_jsonrpc(payload: Any) -> JsonRpcKind:
    """Classify a decoded JSON-RPC message.

    Requests carry ``method`` and ``id``, notifications ``method`` only,
    responses ``id`` with ``result`` or ``error``.
    """
    if not isinstance(payload, dict):
        raise DecodeError("JSON-RPC message must be an object", "$")
    has_id = "id" in payload and payload["id"] is not None
    if "method" in payload:
        return "request" if has_id else "notification"
    if has_id and ("result" in payload or "error" in payload):
        return "response"
    raise DecodeError("not a JSON-RPC request, response or notification", "$")
