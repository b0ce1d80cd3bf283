"""Agent adapter contracts and shared types.

Each ``AgentKind`` has exactly one adapter class.  Adapters satisfy the
``AgentAdapter`` protocol structurally -- they share no base class and no
mutable state; they differ only in their native schemas and mapping tables.
One adapter instance serves one session, so adapter-local state (open
message ids, cumulative snapshots, ...) is naturally per session.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

from agentrelay.daemon.models.enums import AgentKind, InputPartType
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit
from agentrelay.daemon.normalize.operations import Operation


@dataclass(frozen=True)
class NativeEvent:
    """A decoded native event: its type tag, validated body and raw payload."""

    type: str
    body: Any
    raw: Any


class AgentAdapter(Protocol):
    """Protocol for per-agent protocol adapters."""

    kind: ClassVar[AgentKind]
    capabilities: ClassVar[AgentCapabilities]

    def decode(self, frame: str) -> NativeEvent:
        """Decode one raw frame.  Raises ``DecodeError`` on unknown shapes."""
        ...

    def convert(self, event: NativeEvent) -> list[Operation]:
        """Map a native event to zero or more universal operations."""
        ...


class PerMessageAdapter(AgentAdapter, Protocol):
    """Adapter for agents that spawn one process per prompt."""

    def command_args(
        self,
        binary: str,
        content: list[InputPart],
        init: SessionInit,
        native_session_id: str | None,
    ) -> list[str]:
        """Build the argv for one prompt."""
        ...


class RpcAdapter(AgentAdapter, Protocol):
    """Adapter for agents driven over a dedicated JSON-lines RPC process."""

    def command_args(self, binary: str, init: SessionInit) -> list[str]: ...

    def encode_open(self, request_id: str) -> dict[str, Any]: ...

    def encode_prompt(self, content: list[InputPart], request_id: str) -> dict[str, Any]: ...

    def encode_abort(self, request_id: str) -> dict[str, Any]: ...

    def encode_question_reply(self, question_id: str, answers: list[list[str]] | None) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Helpers shared by the mapping tables
# ---------------------------------------------------------------------------


def dump_arguments(value: Any) -> str:
    """Serialize tool arguments the same way for every agent."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def flatten_output(value: Any) -> str:
    """Flatten a tool output (string, content-block list, or object) to text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(flatten_output(v) for v in value)
    if isinstance(value, dict):
        if isinstance(value.get("text"), str):
            return value["text"]
        if "content" in value:
            return flatten_output(value["content"])
        if isinstance(value.get("output"), str):
            return value["output"]
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def has_images(content: list[InputPart]) -> bool:
    return any(p.type == InputPartType.IMAGE for p in content)
