"""Pi adapter -- ``pi --mode rpc``, one dedicated process per session.

Pi speaks JSON lines on stdin/stdout.  Commands carry an ``id`` that is
echoed in the matching ``response`` event; everything else is an agent
event.  Pi has no session-start/end events, and its tool progress reports
the *accumulated* ``partialResult``, so deltas are recovered by diffing
against the previous snapshot.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentrelay.daemon.agents.base import NativeEvent, dump_arguments, flatten_output
from agentrelay.daemon.agents.decoding import parse_json_line, validate
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    InputPartType,
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
from agentrelay.daemon.normalize.diffing import PendingDeltaBuffer
from agentrelay.daemon.normalize.operations import (
    AppendDelta,
    BindNativeSession,
    CompleteItem,
    EndTurn,
    Operation,
    ReportError,
    RequestQuestion,
    StartItem,
    StartTurn,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Native schema
# ---------------------------------------------------------------------------


class _PiModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class PiMessage(_PiModel):
    role: str
    content: str | list[dict[str, Any]] = Field(default_factory=list)
    stopReason: str | None = None  # noqa: N815
    errorMessage: str | None = None  # noqa: N815


class PiAssistantMessageEvent(_PiModel):
    type: str
    delta: str | None = None


class PiResponse(_PiModel):
    type: Literal["response"]
    id: str | None = None
    command: str | None = None
    success: bool = True
    data: Any = None
    error: str | None = None


class PiAgentBoundary(_PiModel):
    type: Literal["agent_start", "agent_end"]


class PiTurnBoundary(_PiModel):
    type: Literal["turn_start", "turn_end"]


class PiMessageStart(_PiModel):
    type: Literal["message_start"]
    message: PiMessage


class PiMessageUpdate(_PiModel):
    type: Literal["message_update"]
    message: PiMessage | None = None
    assistantMessageEvent: PiAssistantMessageEvent  # noqa: N815


class PiMessageEnd(_PiModel):
    type: Literal["message_end"]
    message: PiMessage


class PiToolExecutionStart(_PiModel):
    type: Literal["tool_execution_start"]
    toolCallId: str  # noqa: N815
    toolName: str  # noqa: N815
    args: Any = None


class PiToolExecutionUpdate(_PiModel):
    type: Literal["tool_execution_update"]
    toolCallId: str  # noqa: N815
    toolName: str | None = None  # noqa: N815
    partialResult: Any = None  # noqa: N815


class PiToolExecutionEnd(_PiModel):
    type: Literal["tool_execution_end"]
    toolCallId: str  # noqa: N815
    toolName: str | None = None  # noqa: N815
    result: Any = None
    isError: bool = False  # noqa: N815


class PiMaintenance(_PiModel):
    type: Literal["auto_compaction_start", "auto_compaction_end", "auto_retry_start", "auto_retry_end"]
    reason: str | None = None
    attempt: int | None = None
    errorMessage: str | None = None  # noqa: N815


class PiExtensionError(_PiModel):
    type: Literal["extension_error", "hook_error"]
    error: str | None = None
    extensionPath: str | None = None  # noqa: N815


class PiUiRequest(_PiModel):
    type: Literal["extension_ui_request"]
    id: str
    method: str
    title: str | None = None
    message: str | None = None
    options: list[str] | None = None


PiEvent = Annotated[
    PiResponse
    | PiAgentBoundary
    | PiTurnBoundary
    | PiMessageStart
    | PiMessageUpdate
    | PiMessageEnd
    | PiToolExecutionStart
    | PiToolExecutionUpdate
    | PiToolExecutionEnd
    | PiMaintenance
    | PiExtensionError
    | PiUiRequest,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(PiEvent)

# UI methods that expect an answer; the rest are fire-and-forget.
_DIALOG_METHODS = frozenset({"select", "confirm", "input", "editor"})


def _message_content(message: PiMessage) -> list[ContentPart]:
    if isinstance(message.content, str):
        return [TextPart(text=message.content)] if message.content else []
    parts: list[ContentPart] = []
    for block in message.content:
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            parts.append(TextPart(text=block["text"]))
        elif block_type == "thinking" and block.get("thinking"):
            parts.append(ReasoningPart(text=block["thinking"], visibility=ReasoningVisibility.PRIVATE))
    return parts


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class PiAdapter:
    """Mapping table for the Pi RPC event stream."""

    kind: ClassVar[AgentKind] = AgentKind.PI
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities(
        concurrency=ConcurrencyModel.DEDICATED,
        native_session_start=False,
        native_session_end=False,
        streaming_deltas=True,
        abort=True,
        questions=True,
        permissions=False,
        images=True,
    )

    def __init__(self) -> None:
        self._message_seq = 0
        self._current_message: str | None = None
        self._current_role: ItemRole | None = None
        self._last_assistant: str | None = None
        self._maintenance: dict[str, str] = {}
        self._open_results: set[str] = set()
        self._partials = PendingDeltaBuffer()
        self._ui_methods: dict[str, str] = {}

    # -- Decoding --------------------------------------------------------------

    def decode(self, frame: str) -> NativeEvent:
        payload = parse_json_line(frame)
        body = validate(_EVENT_ADAPTER, payload)
        return NativeEvent(type=body.type, body=body, raw=payload)

    # -- Conversion ------------------------------------------------------------

    def convert(self, event: NativeEvent) -> list[Operation]:  # noqa: C901
        body = event.body
        match body:
            case PiResponse():
                return self._response(body)
            case PiAgentBoundary(type="agent_start"):
                return [StartTurn()]
            case PiAgentBoundary():
                return [EndTurn(status="completed")]
            case PiTurnBoundary():
                return []
            case PiMessageStart():
                return self._message_start(body.message)
            case PiMessageUpdate():
                return self._message_update(body)
            case PiMessageEnd():
                return self._message_end(body.message)
            case PiToolExecutionStart():
                return self._tool_start(body)
            case PiToolExecutionUpdate():
                return self._tool_update(body)
            case PiToolExecutionEnd():
                return self._tool_end(body)
            case PiMaintenance():
                return self._maintenance_event(body)
            case PiExtensionError():
                return [ReportError(message=body.error or "extension error", code=body.type)]
            case PiUiRequest():
                return self._ui_request(body)
        return []

    def _response(self, body: PiResponse) -> list[Operation]:
        if not body.success:
            return [ReportError(message=body.error or f"{body.command} failed", code=f"{body.command}_failed")]
        if body.command == "get_state" and isinstance(body.data, dict):
            session_id = body.data.get("sessionId")
            if isinstance(session_id, str) and session_id:
                return [BindNativeSession(session_id)]
        return []

    def _next_message_id(self) -> str:
        self._message_seq += 1
        return f"pi_msg_{self._message_seq}"

    def _message_start(self, message: PiMessage) -> list[Operation]:
        role = _role(message.role)
        if role is None:
            return []
        native_id = self._next_message_id()
        self._current_message = native_id
        self._current_role = role
        return [StartItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=role)]

    def _message_update(self, body: PiMessageUpdate) -> list[Operation]:
        update = body.assistantMessageEvent
        if update.type != "text_delta" or not update.delta:
            return []
        if self._current_message is None:
            self._current_message = self._next_message_id()
            self._current_role = ItemRole.ASSISTANT
        return [AppendDelta(native_item_id=self._current_message, delta=update.delta)]

    def _message_end(self, message: PiMessage) -> list[Operation]:
        role = _role(message.role)
        if role is None:
            return []
        native_id = self._current_message or self._next_message_id()
        self._current_message = None
        self._current_role = None
        if role == ItemRole.ASSISTANT:
            self._last_assistant = native_id

        failed = message.stopReason in ("error", "aborted")
        ops: list[Operation] = [
            CompleteItem(
                native_item_id=native_id,
                kind=ItemKind.MESSAGE,
                role=role,
                status=ItemStatus.FAILED if failed else ItemStatus.COMPLETED,
                content=_message_content(message),
            ),
        ]
        if message.stopReason == "error":
            ops.append(ReportError(message=message.errorMessage or "assistant message failed", code="message_error"))
        return ops

    def _tool_start(self, body: PiToolExecutionStart) -> list[Operation]:
        call = ToolCallPart(name=body.toolName, arguments=dump_arguments(body.args), call_id=body.toolCallId)
        return [
            StartItem(
                native_item_id=body.toolCallId,
                kind=ItemKind.TOOL_CALL,
                role=ItemRole.ASSISTANT,
                parent_native_id=self._last_assistant,
                content=[call],
            ),
            CompleteItem(native_item_id=body.toolCallId, kind=ItemKind.TOOL_CALL, role=ItemRole.ASSISTANT),
        ]

    def _open_result(self, call_id: str) -> list[Operation]:
        result_id = f"{call_id}:result"
        if result_id in self._open_results:
            return []
        self._open_results.add(result_id)
        return [
            StartItem(native_item_id=result_id, kind=ItemKind.TOOL_RESULT, role=ItemRole.TOOL, parent_native_id=call_id)
        ]

    def _tool_update(self, body: PiToolExecutionUpdate) -> list[Operation]:
        ops = self._open_result(body.toolCallId)
        delta = self._partials.advance(body.toolCallId, flatten_output(body.partialResult))
        if delta.resync:
            logger.warning("Pi tool %s: partialResult is not a prefix extension; resending full value", body.toolCallId)
        if delta.text:
            ops.append(
                AppendDelta(
                    native_item_id=f"{body.toolCallId}:result",
                    delta=delta.text,
                    resync=delta.resync,
                    kind=ItemKind.TOOL_RESULT,
                    role=ItemRole.TOOL,
                    parent_native_id=body.toolCallId,
                )
            )
        return ops

    def _tool_end(self, body: PiToolExecutionEnd) -> list[Operation]:
        ops = self._open_result(body.toolCallId)
        self._partials.discard(body.toolCallId)
        output = flatten_output(body.result)
        ops.append(
            CompleteItem(
                native_item_id=f"{body.toolCallId}:result",
                kind=ItemKind.TOOL_RESULT,
                role=ItemRole.TOOL,
                status=ItemStatus.FAILED if body.isError else ItemStatus.COMPLETED,
                content=[ToolResultPart(call_id=body.toolCallId, output=output)],
                parent_native_id=body.toolCallId,
            )
        )
        return ops

    def _maintenance_event(self, body: PiMaintenance) -> list[Operation]:
        label = "compaction" if "compaction" in body.type else "retry"
        if body.type.endswith("_start"):
            native_id = f"pi_{label}_{self._next_message_id()}"
            self._maintenance[label] = native_id
            detail = body.reason or body.errorMessage
            return [
                StartItem(
                    native_item_id=native_id,
                    kind=ItemKind.STATUS,
                    role=ItemRole.SYSTEM,
                    content=[StatusPart(label=label, detail=detail)],
                )
            ]
        native_id = self._maintenance.pop(label, None)
        if native_id is None:
            return []
        return [CompleteItem(native_item_id=native_id, kind=ItemKind.STATUS, role=ItemRole.SYSTEM)]

    def _ui_request(self, body: PiUiRequest) -> list[Operation]:
        if body.method not in _DIALOG_METHODS:
            return []
        self._ui_methods[body.id] = body.method
        options = body.options or (["yes", "no"] if body.method == "confirm" else [])
        prompt = body.title or body.message or body.method
        return [RequestQuestion(question_id=body.id, prompt=prompt, options=options)]

    # -- Serialization ---------------------------------------------------------

    def command_args(self, binary: str, init: SessionInit) -> list[str]:
        args = [binary, "--mode", "rpc", "--no-session"]
        if init.model:
            args.extend(["--model", init.model])
        return args

    def encode_open(self, request_id: str) -> dict[str, Any]:
        return {"id": request_id, "type": "get_state"}

    def encode_prompt(self, content: list[InputPart], request_id: str) -> dict[str, Any]:
        inline = [p for p in content if p.type == InputPartType.IMAGE and p.data]
        rest = [p for p in content if p not in inline]
        command: dict[str, Any] = {"id": request_id, "type": "prompt", "message": prompt_text(rest)}
        if inline:
            command["images"] = [
                {"type": "image", "data": p.data, "mimeType": p.mime or "image/png"} for p in inline
            ]
        return command

    def encode_abort(self, request_id: str) -> dict[str, Any]:
        return {"id": request_id, "type": "abort"}

    def encode_question_reply(self, question_id: str, answers: list[list[str]] | None) -> dict[str, Any]:
        method = self._ui_methods.pop(question_id, "select")
        if answers is None:
            return {"type": "extension_ui_response", "id": question_id, "cancelled": True}
        value = answers[0][0] if answers and answers[0] else ""
        if method == "confirm":
            return {"type": "extension_ui_response", "id": question_id, "confirmed": value.lower() in ("yes", "true")}
        return {"type": "extension_ui_response", "id": question_id, "value": value}


def _role(role: str) -> ItemRole | None:
    if role == "user":
        return ItemRole.USER
    if role == "assistant":
        return ItemRole.ASSISTANT
    return None
