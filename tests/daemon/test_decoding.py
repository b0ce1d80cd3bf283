"""Tests for the shared wire decoders (JSON lines, SSE, JSON-RPC)."""

from __future__ import annotations

import hashlib
from typing import Literal

import pytest
from pydantic import BaseModel, TypeAdapter

from agentrelay.daemon.agents.decoding import (
    SSEDecoder,
    SSEFrame,
    classify_jsonrpc,
    event_type_of,
    format_location,
    parse_json_line,
    raw_hash,
    validate,
)
from agentrelay.daemon.errors import DecodeError

# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


class _Ping(BaseModel):
    type: Literal["ping"]
    count: list[int]


def test_parse_json_line() -> None:
    assert parse_json_line('{"type": "ping"}') == {"type": "ping"}


def test_parse_json_line_reports_position() -> None:
    with pytest.raises(DecodeError) as exc_info:
        parse_json_line('{"type": ')
    assert exc_info.value.error.startswith("invalid JSON")
    assert exc_info.value.location.startswith("line 1, column")


def test_format_location() -> None:
    assert format_location(()) == "$"
    assert format_location(("params", "items", 2, "id")) == "$.params.items[2].id"


def test_validate_maps_errors_to_json_path() -> None:
    adapter = TypeAdapter(_Ping)
    assert validate(adapter, {"type": "ping", "count": [1]}).count == [1]
    with pytest.raises(DecodeError) as exc_info:
        validate(adapter, {"type": "ping", "count": [1, "x"]})
    assert exc_info.value.location == "$.count[1]"


def test_raw_hash_is_sha256_of_frame() -> None:
    assert raw_hash("garbage") == hashlib.sha256(b"garbage").hexdigest()


def test_event_type_of_never_raises() -> None:
    assert event_type_of({"type": "ping"}) == "ping"
    assert event_type_of({"method": "turn/started"}, key="method") == "turn/started"
    assert event_type_of([1, 2]) == "unknown"
    assert event_type_of({"type": 3}) == "unknown"


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------


def feed_all(decoder: SSEDecoder, lines: list[str]) -> list[SSEFrame]:
    frames = [decoder.feed(line) for line in lines]
    return [f for f in frames if f is not None]


def test_sse_frame_ends_on_blank_line() -> None:
    frames = feed_all(SSEDecoder(), ["event: message", 'data: {"a": 1}', "id: 7", ""])
    assert frames == [SSEFrame(event="message", data='{"a": 1}', id="7")]


def test_sse_multiline_data_and_comments() -> None:
    frames = feed_all(SSEDecoder(), [": keep-alive", "data: one", "data: two", "", "data:three\r\n", "\r\n"])
    assert [f.data for f in frames] == ["one\ntwo", "three"]
    assert frames[0].event is None


def test_sse_blank_lines_without_data_are_ignored() -> None:
    assert feed_all(SSEDecoder(), ["", "event: ping", ""]) == []


# ---------------------------------------------------------------------------
# JSON-RPC
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("payload", "kind"),
    [
        ({"id": 1, "method": "thread/start", "params": {}}, "request"),
        ({"method": "turn/started", "params": {}}, "notification"),
        ({"id": None, "method": "initialized"}, "notification"),
        ({"id": 1, "result": {}}, "response"),
        ({"id": 2, "error": {"message": "boom"}}, "response"),
    ],
)
def test_classify_jsonrpc(payload: dict, kind: str) -> None:
    assert classify_jsonrpc(payload) == kind


@pytest.mark.parametrize("payload", [[1, 2], {"id": 1}, {"result": {}}])
def test_classify_jsonrpc_rejects_other_shapes(payload: object) -> None:
    with pytest.raises(DecodeError):
        classify_jsonrpc(payload)
