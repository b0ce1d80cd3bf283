"""Amp adapter -- ``amp --execute <prompt> --stream-json``.

One subprocess per prompt; the thread id reported on the stream is used to
continue the conversation (``amp threads continue <id>``).  Amp has no
session-start event, no turn-start event, no streaming deltas and no way to
cancel a running turn.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentrelay.daemon.agents.base import NativeEvent, dump_arguments, flatten_output
from agentrelay.daemon.agents.decoding import parse_json_line, validate
from agentrelay.daemon.models.enums import AgentKind, ConcurrencyModel, ItemKind, ItemRole, ItemStatus
from agentrelay.daemon.models.input import InputPart, prompt_text
from agentrelay.daemon.models.items import TextPart, ToolCallPart, ToolResultPart
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit
from agentrelay.daemon.normalize.operations import (
    BindNativeSession,
    CompleteItem,
    EndTurn,
    Operation,
    ReportError,
    StartItem,
    StartTurn,
)

# ---------------------------------------------------------------------------
# Native schema
# ---------------------------------------------------------------------------


class _AmpModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    thread_id: str | None = None


class AmpToolCall(BaseModel):
    id: str
    name: str
    arguments: Any = None


class AmpToolResult(BaseModel):
    tool_call_id: str
    output: Any = None
    is_error: bool = False


class AmpMessage(_AmpModel):
    type: Literal["message"]
    id: str | None = None
    content: str


class AmpToolCallEvent(_AmpModel):
    type: Literal["tool_call"]
    tool_call: AmpToolCall


class AmpToolResultEvent(_AmpModel):
    type: Literal["tool_result"]
    tool_result: AmpToolResult


class AmpError(_AmpModel):
    type: Literal["error"]
    error: str | dict[str, Any]


class AmpDone(_AmpModel):
    type: Literal["done"]


AmpEvent = Annotated[
    AmpMessage | AmpToolCallEvent | AmpToolResultEvent | AmpError | AmpDone,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(AmpEvent)


class AmpAdapter:
    """Mapping table for Amp's stream-json output."""

    kind: ClassVar[AgentKind] = AgentKind.AMP
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities(
        concurrency=ConcurrencyModel.PER_MESSAGE,
        native_session_start=False,
        native_session_end=False,
        streaming_deltas=False,
        abort=False,
        questions=False,
        permissions=False,
        images=False,
    )

    def __init__(self) -> None:
        self._thread_id: str | None = None
        self._in_turn = False
        self._seq = 0

    def decode(self, frame: str) -> NativeEvent:
        payload = parse_json_line(frame)
        body = validate(_EVENT_ADAPTER, payload)
        return NativeEvent(type=body.type, body=body, raw=payload)

    def convert(self, event: NativeEvent) -> list[Operation]:
        body = event.body
        ops: list[Operation] = []
        if body.thread_id and body.thread_id != self._thread_id:
            self._thread_id = body.thread_id
            ops.append(BindNativeSession(body.thread_id))

        if isinstance(body, AmpDone):
            self._in_turn = False
            ops.append(EndTurn(status="completed"))
            return ops

        if not self._in_turn:
            self._in_turn = True
            ops.append(StartTurn())

        match body:
            case AmpMessage():
                self._seq += 1
                native_id = body.id or f"amp_msg_{self._seq}"
                ops.append(StartItem(native_item_id=native_id, kind=ItemKind.MESSAGE, role=ItemRole.ASSISTANT))
                ops.append(
                    CompleteItem(
                        native_item_id=native_id,
                        kind=ItemKind.MESSAGE,
                        role=ItemRole.ASSISTANT,
                        content=[TextPart(text=body.content)],
                    )
                )
            case AmpToolCallEvent():
                call = body.tool_call
                part = ToolCallPart(name=call.name, arguments=dump_arguments(call.arguments), call_id=call.id)
                ops.append(StartItem(native_item_id=call.id, kind=ItemKind.TOOL_CALL, role=ItemRole.ASSISTANT))
                ops.append(
                    CompleteItem(
                        native_item_id=call.id,
                        kind=ItemKind.TOOL_CALL,
                        role=ItemRole.ASSISTANT,
                        content=[part],
                    )
                )
            case AmpToolResultEvent():
                result = body.tool_result
                native_id = f"{result.tool_call_id}:result"
                ops.append(
                    StartItem(
                        native_item_id=native_id,
                        kind=ItemKind.TOOL_RESULT,
                        role=ItemRole.TOOL,
                        parent_native_id=result.tool_call_id,
                    )
                )
                ops.append(
                    CompleteItem(
                        native_item_id=native_id,
                        kind=ItemKind.TOOL_RESULT,
                        role=ItemRole.TOOL,
                        status=ItemStatus.FAILED if result.is_error else ItemStatus.COMPLETED,
                        content=[ToolResultPart(call_id=result.tool_call_id, output=flatten_output(result.output))],
                        parent_native_id=result.tool_call_id,
                    )
                )
            case AmpError():
                message = body.error if isinstance(body.error, str) else str(body.error.get("message", body.error))
                ops.append(ReportError(message=message, code="amp_error"))
        return ops

    def command_args(
        self,
        binary: str,
        content: list[InputPart],
        init: SessionInit,
        native_session_id: str | None,
    ) -> list[str]:
        args = [binary]
        if native_session_id:
            args.extend(["threads", "continue", native_session_id])
        args.extend(["--execute", prompt_text(content), "--stream-json"])
        if init.permission_mode == "bypass":
            args.append("--dangerously-allow-all")
        return args
