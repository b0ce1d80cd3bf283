"""Claude Code adapter -- ``claude --print --output-format stream-json``.

One subprocess per prompt; follow-up prompts resume the conversation with
``--resume <session_id>``.  Claude emits complete messages (no partial
deltas), so every item is opened and closed by the same native event and
the synthesizer contributes the single full-content delta.

Top-level event types:

* ``system``    -- ``init`` carries the session id; other subtypes are status.
* ``assistant`` -- an API message whose ``content[]`` holds ``text``,
  ``thinking`` and ``tool_use`` blocks.
* ``user``      -- tool results fed back to the model (or echoed user text).
* ``result``    -- end of the turn, with success/error subtype.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentrelay.daemon.agents.base import NativeEvent, dump_arguments, flatten_output
from agentrelay.daemon.agents.decoding import parse_json_line, validate
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    ItemKind,
    ItemRole,
    ItemStatus,
    ReasoningVisibility,
)
from agentrelay.daemon.models.input import InputPart, prompt_text
from agentrelay.daemon.models.items import (
    ContentPart,
    ReasoningPart,
    StatusPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit
from agentrelay.daemon.normalize.operations import (
    BindNativeSession,
    CompleteItem,
    EndTurn,
    Operation,
    ReportError,
    StartItem,
    StartSession,
    StartTurn,
)

# ---------------------------------------------------------------------------
# Native schema
# ---------------------------------------------------------------------------


class _ClaudeModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class ClaudeApiMessage(_ClaudeModel):
    id: str | None = None
    role: str
    content: str | list[dict[str, Any]] = Field(default_factory=list)


class ClaudeSystem(_ClaudeModel):
    type: Literal["system"]
    subtype: str
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None


class ClaudeAssistant(_ClaudeModel):
    type: Literal["assistant"]
    message: ClaudeApiMessage
    session_id: str | None = None
    parent_tool_use_id: str | None = None


class ClaudeUser(_ClaudeModel):
    type: Literal["user"]
    message: ClaudeApiMessage
    session_id: str | None = None


class ClaudeResult(_ClaudeModel):
    type: Literal["result"]
    subtype: str
    is_error: bool = False
    result: str | None = None
    session_id: str | None = None


ClaudeEvent = Annotated[
    ClaudeSystem | ClaudeAssistant | ClaudeUser | ClaudeResult,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ClaudeEvent)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ClaudeAdapter:
    """Mapping table for Claude Code's stream-json output."""

    kind: ClassVar[AgentKind] = AgentKind.CLAUDE
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities(
        concurrency=ConcurrencyModel.PER_MESSAGE,
        native_session_start=True,
        native_session_end=False,
        streaming_deltas=False,
        abort=True,
        questions=False,
        permissions=False,
        images=True,
    )

    def __init__(self) -> None:
        self._blocks_per_message: dict[str, int] = {}
        self._last_message: dict[str, str] = {}
        self._anonymous = 0

    def decode(self, frame: str) -> NativeEvent:
        payload = parse_json_line(frame)
        body = validate(_EVENT_ADAPTER, payload)
        return NativeEvent(type=body.type, body=body, raw=payload)

    def convert(self, event: NativeEvent) -> list[Operation]:
        body = event.body
        match body:
            case ClaudeSystem(subtype="init"):
                metadata = {k: v for k, v in (("model", body.model), ("cwd", body.cwd)) if v}
                return [StartSession(native_session_id=body.session_id, metadata=metadata or None), StartTurn()]
            case ClaudeSystem():
                return self._status(body.subtype)
            case ClaudeAssistant():
                return self._assistant(body)
            case ClaudeUser():
                return self._user(body)
            case ClaudeResult():
                return self._result(body)
        return []

    # -- Mapping ---------------------------------------------------------------

    def _fresh_id(self, prefix: str) -> str:
        self._anonymous += 1
        return f"{prefix}_{self._anonymous}"

    def _status(self, subtype: str) -> list[Operation]:
        native_id = self._fresh_id("claude_status")
        return [
            StartItem(native_item_id=native_id, kind=ItemKind.STATUS, role=ItemRole.SYSTEM),
            CompleteItem(
                native_item_id=native_id,
                kind=ItemKind.STATUS,
                role=ItemRole.SYSTEM,
                content=[StatusPart(label=subtype)],
            ),
        ]

    def _assistant(self, body: ClaudeAssistant) -> list[Operation]:
        message_id = body.message.id or self._fresh_id("claude_msg")
        blocks = body.message.content
        if isinstance(blocks, str):
            blocks = [{"type": "text", "text": blocks}]

        parts: list[ContentPart] = []
        tool_uses: list[dict[str, Any]] = []
        for block in blocks:
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                parts.append(TextPart(text=block["text"]))
            elif block_type == "thinking" and block.get("thinking"):
                parts.append(ReasoningPart(text=block["thinking"], visibility=ReasoningVisibility.PRIVATE))
            elif block_type == "tool_use":
                tool_uses.append(block)

        ops: list[Operation] = []
        if parts:
            # Claude may split one API message over several events sharing its id.
            index = self._blocks_per_message.get(message_id, 0)
            self._blocks_per_message[message_id] = index + 1
            native_id = f"{message_id}#{index}"
            self._last_message[message_id] = native_id
            ops.append(StartItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=ItemRole.ASSISTANT))
            ops.append(
                CompleteItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=ItemRole.ASSISTANT, content=parts)
            )

        parent = self._last_message.get(message_id)
        for block in tool_uses:
            call_id = str(block.get("id") or self._fresh_id("claude_tool"))
            call = ToolCallPart(
                name=str(block.get("name", "")),
                arguments=dump_arguments(block.get("input")),
                call_id=call_id,
            )
            ops.append(
                StartItem(
                    native_item_id=call_id,
                    kind=ItemKind.TOOL_CALL,
                    role=ItemRole.ASSISTANT,
                    parent_native_id=parent,
                )
            )
            ops.append(
                CompleteItem(
                    native_item_id=call_id,
                    kind=ItemKind.TOOL_CALL,
                    role=ItemRole.ASSISTANT,
                    content=[call],
                    parent_native_id=parent,
                )
            )
        return ops

    def _user(self, body: ClaudeUser) -> list[Operation]:
        blocks = body.message.content
        if isinstance(blocks, str):
            blocks = [{"type": "text", "text": blocks}]

        ops: list[Operation] = []
        texts: list[ContentPart] = []
        for block in blocks:
            block_type = block.get("type")
            if block_type == "tool_result":
                call_id = str(block.get("tool_use_id", ""))
                native_id = f"{call_id}:result"
                status = ItemStatus.FAILED if block.get("is_error") else ItemStatus.COMPLETED
                result = ToolResultPart(call_id=call_id, output=flatten_output(block.get("content")))
                ops.append(
                    StartItem(
                        native_item_id=native_id,
                        kind=ItemKind.TOOL_RESULT,
                        role=ItemRole.TOOL,
                        parent_native_id=call_id,
                    )
                )
                ops.append(
                    CompleteItem(
                        native_item_id=native_id,
                        kind=ItemKind.TOOL_RESULT,
                        role=ItemRole.TOOL,
                        status=status,
                        content=[result],
                        parent_native_id=call_id,
                    )
                )
            elif block_type == "text" and block.get("text"):
                texts.append(TextPart(text=block["text"]))

        if texts:
            native_id = self._fresh_id("claude_user")
            ops.insert(0, StartItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=ItemRole.USER))
            ops.insert(
                1, CompleteItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=ItemRole.USER, content=texts)
            )
        return ops

    def _result(self, body: ClaudeResult) -> list[Operation]:
        ops: list[Operation] = []
        if body.session_id:
            ops.append(BindNativeSession(body.session_id))
        failed = body.is_error or body.subtype != "success"
        if failed:
            ops.append(ReportError(message=body.result or body.subtype, code=body.subtype))
        ops.append(EndTurn(status="failed" if failed else "completed"))
        return ops

    # -- Serialization ---------------------------------------------------------

    def command_args(
        self,
        binary: str,
        content: list[InputPart],
        init: SessionInit,
        native_session_id: str | None,
    ) -> list[str]:
        args = [binary, "--print", "--output-format", "stream-json", "--verbose"]
        if init.model:
            args.extend(["--model", init.model])
        if native_session_id:
            args.extend(["--resume", native_session_id])
        if init.permission_mode == "bypass":
            args.append("--dangerously-skip-permissions")
        elif init.permission_mode:
            args.extend(["--permission-mode", init.permission_mode])
        args.append(prompt_text(content))
        return args
