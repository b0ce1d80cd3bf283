"""Codex adapter -- ``codex app-server`` JSON-RPC over stdio.

One app-server process is shared by every Codex session of the same build;
each session is a *thread* and every notification carries its ``threadId``.
The shared-server backend routes frames by that id, resolves responses to
its own requests, and hands everything else (notifications and
server-initiated approval requests) to this adapter.

Notifications:

* ``thread/started``, ``turn/started``, ``turn/completed``
* ``item/started`` / ``item/completed`` with a typed ``item`` payload
* ``item/agentMessage/delta``, ``item/reasoning/*Delta``,
  ``item/commandExecution/outputDelta``, ``item/fileChange/outputDelta``
* ``error``

Server requests: ``item/commandExecution/requestApproval`` and
``item/fileChange/requestApproval``, answered with a ``decision``.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentrelay.daemon.agents.base import NativeEvent, dump_arguments, flatten_output
from agentrelay.daemon.agents.decoding import classify_jsonrpc, parse_json_line, validate
from agentrelay.daemon.errors import DecodeError
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    FileAction,
    InputPartType,
    ItemKind,
    ItemRole,
    ItemStatus,
    PermissionReply,
    ReasoningVisibility,
)
from agentrelay.daemon.models.input import InputPart, prompt_text
from agentrelay.daemon.models.items import (
    ContentPart,
    FileRefPart,
    JsonPart,
    ReasoningPart,
    StatusPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit
from agentrelay.daemon.normalize.operations import (
    AppendDelta,
    CompleteItem,
    EndTurn,
    Operation,
    ReportError,
    RequestPermission,
    StartItem,
    StartSession,
    StartTurn,
)

CLIENT_NAME = "agentrelay"

# Notifications that carry nothing a consumer needs.
_IGNORED_METHODS = frozenset(
    {
        "thread/tokenUsage/updated",
        "thread/compacted",
        "turn/diff/updated",
        "turn/plan/updated",
        "item/mcpToolCall/progress",
        "account/updated",
        "account/rateLimits/updated",
        "deprecationNotice",
        "sessionConfigured",
    }
)
_LEGACY_PREFIX = "codex/event/"

_APPROVAL_METHODS = frozenset({"item/commandExecution/requestApproval", "item/fileChange/requestApproval"})

_DECISIONS = {
    PermissionReply.ONCE: "accept",
    PermissionReply.ALWAYS: "acceptForSession",
    PermissionReply.REJECT: "decline",
}

# ---------------------------------------------------------------------------
# Native schema
# ---------------------------------------------------------------------------


class _CodexModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class CodexThread(_CodexModel):
    id: str


class CodexTurnInfo(_CodexModel):
    id: str
    status: str | None = None
    error: dict[str, Any] | None = None


class CodexItem(_CodexModel):
    type: str
    id: str


class ThreadStartedParams(_CodexModel):
    thread: CodexThread


class TurnParams(_CodexModel):
    threadId: str  # noqa: N815
    turn: CodexTurnInfo


class ItemParams(_CodexModel):
    threadId: str  # noqa: N815
    turnId: str | None = None  # noqa: N815
    item: CodexItem


class DeltaParams(_CodexModel):
    threadId: str  # noqa: N815
    turnId: str | None = None  # noqa: N815
    itemId: str  # noqa: N815
    delta: str


class ErrorParams(_CodexModel):
    threadId: str | None = None  # noqa: N815
    turnId: str | None = None  # noqa: N815
    error: dict[str, Any]
    willRetry: bool = False  # noqa: N815


class ApprovalParams(_CodexModel):
    threadId: str  # noqa: N815
    turnId: str | None = None  # noqa: N815
    itemId: str  # noqa: N815
    reason: str | None = None
    command: str | list[str] | None = None
    cwd: str | None = None


class ThreadStarted(_CodexModel):
    method: Literal["thread/started"]
    params: ThreadStartedParams


class TurnStarted(_CodexModel):
    method: Literal["turn/started"]
    params: TurnParams


class TurnCompleted(_CodexModel):
    method: Literal["turn/completed"]
    params: TurnParams


class ItemStarted(_CodexModel):
    method: Literal["item/started"]
    params: ItemParams


class ItemCompleted(_CodexModel):
    method: Literal["item/completed"]
    params: ItemParams


class MessageDelta(_CodexModel):
    method: Literal["item/agentMessage/delta"]
    params: DeltaParams


class ReasoningDelta(_CodexModel):
    method: Literal["item/reasoning/textDelta", "item/reasoning/summaryTextDelta"]
    params: DeltaParams


class OutputDelta(_CodexModel):
    method: Literal["item/commandExecution/outputDelta", "item/fileChange/outputDelta"]
    params: DeltaParams


class CodexErrorNotification(_CodexModel):
    method: Literal["error"]
    params: ErrorParams


class ApprovalRequest(_CodexModel):
    id: int | str
    method: Literal["item/commandExecution/requestApproval", "item/fileChange/requestApproval"]
    params: ApprovalParams


CodexMessage = Annotated[
    ThreadStarted
    | TurnStarted
    | TurnCompleted
    | ItemStarted
    | ItemCompleted
    | MessageDelta
    | ReasoningDelta
    | OutputDelta
    | CodexErrorNotification
    | ApprovalRequest,
    Field(discriminator="method"),
]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(CodexMessage)


def thread_id_of(payload: Any) -> str | None:
    """Routing key of a decoded app-server message, if it has one."""
    if not isinstance(payload, dict):
        return None
    params = payload.get("params")
    if not isinstance(params, dict):
        return None
    thread_id = params.get("threadId")
    if isinstance(thread_id, str):
        return thread_id
    thread = params.get("thread")
    if isinstance(thread, dict) and isinstance(thread.get("id"), str):
        return thread["id"]
    return None


# ---------------------------------------------------------------------------
# Item mapping
# ---------------------------------------------------------------------------


def _item_shape(item: dict[str, Any]) -> tuple[ItemKind, ItemRole]:
    match item.get("type"):
        case "userMessage":
            return ItemKind.MESSAGE, ItemRole.USER
        case "agentMessage" | "reasoning":
            return ItemKind.MESSAGE, ItemRole.ASSISTANT
        case "commandExecution" | "fileChange" | "mcpToolCall" | "webSearch":
            return ItemKind.TOOL_CALL, ItemRole.ASSISTANT
    return ItemKind.STATUS, ItemRole.SYSTEM


def _tool_call(item: dict[str, Any]) -> ToolCallPart:
    item_id = item["id"]
    match item.get("type"):
        case "commandExecution":
            command = item.get("command")
            if isinstance(command, list):
                command = " ".join(command)
            return ToolCallPart(name="shell", arguments=command or "", call_id=item_id)
        case "fileChange":
            paths = [c.get("path") for c in item.get("changes") or [] if isinstance(c, dict)]
            return ToolCallPart(name="apply_patch", arguments=dump_arguments({"paths": paths}), call_id=item_id)
        case "mcpToolCall":
            name = f"{item.get('server', 'mcp')}.{item.get('tool', '')}"
            return ToolCallPart(name=name, arguments=dump_arguments(item.get("arguments")), call_id=item_id)
        case "webSearch":
            return ToolCallPart(name="web_search", arguments=item.get("query") or "", call_id=item_id)
    return ToolCallPart(name=str(item.get("type")), call_id=item_id)


def _message_content(item: dict[str, Any]) -> list[ContentPart]:
    match item.get("type"):
        case "agentMessage":
            text = item.get("text")
            return [TextPart(text=text)] if text else []
        case "userMessage":
            parts: list[ContentPart] = []
            for block in item.get("content") or []:
                if block.get("type") == "text" and block.get("text"):
                    parts.append(TextPart(text=block["text"]))
            return parts
        case "reasoning":
            text = "\n".join([*(item.get("summary") or []), *(item.get("content") or [])])
            return [ReasoningPart(text=text, visibility=ReasoningVisibility.PRIVATE)] if text else []
    return [StatusPart(label=str(item.get("type")))]


_FILE_ACTIONS = {"add": FileAction.WRITE, "delete": FileAction.WRITE, "update": FileAction.PATCH}


def _file_refs(item: dict[str, Any]) -> list[ContentPart]:
    refs: list[ContentPart] = []
    for change in item.get("changes") or []:
        kind = change.get("kind")
        if isinstance(kind, dict):
            kind = kind.get("type")
        action = _FILE_ACTIONS.get(kind, FileAction.PATCH)
        refs.append(FileRefPart(path=change.get("path", ""), action=action, diff=change.get("diff")))
    return refs


def _item_failed(item: dict[str, Any]) -> bool:
    if item.get("status") in ("failed", "declined"):
        return True
    exit_code = item.get("exitCode")
    return isinstance(exit_code, int) and exit_code != 0


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CodexAdapter:
    """Mapping table for one Codex thread on a shared app-server."""

    kind: ClassVar[AgentKind] = AgentKind.CODEX
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities(
        concurrency=ConcurrencyModel.SHARED_SERVER,
        native_session_start=True,
        native_session_end=False,
        streaming_deltas=True,
        abort=True,
        questions=False,
        permissions=True,
        images=True,
    )

    def __init__(self) -> None:
        self._active_turn: str | None = None
        self._open_results: set[str] = set()
        self._approvals: dict[str, int | str] = {}

    @property
    def active_turn(self) -> str | None:
        return self._active_turn

    def decode(self, frame: str) -> NativeEvent:
        payload = parse_json_line(frame)
        kind = classify_jsonrpc(payload)
        if kind == "response":
            raise DecodeError("unexpected JSON-RPC response", "$.id")
        method = payload["method"]
        if method in _IGNORED_METHODS or method.startswith(_LEGACY_PREFIX):
            return NativeEvent(type=method, body=None, raw=payload)
        if kind == "request" and method not in _APPROVAL_METHODS:
            raise DecodeError(f"unsupported server request {method!r}", "$.method")
        body = validate(_MESSAGE_ADAPTER, payload)
        return NativeEvent(type=method, body=body, raw=payload)

    def convert(self, event: NativeEvent) -> list[Operation]:  # noqa: C901
        body = event.body
        match body:
            case None:
                return []
            case ThreadStarted():
                return [StartSession(native_session_id=body.params.thread.id)]
            case TurnStarted():
                self._active_turn = body.params.turn.id
                return [StartTurn(turn_id=body.params.turn.id)]
            case TurnCompleted():
                return self._turn_completed(body.params)
            case ItemStarted():
                return self._item_started(body.params.item.model_dump())
            case ItemCompleted():
                return self._item_completed(body.params.item.model_dump())
            case MessageDelta():
                return [AppendDelta(native_item_id=body.params.itemId, delta=body.params.delta)]
            case ReasoningDelta():
                return [AppendDelta(native_item_id=body.params.itemId, delta=body.params.delta)]
            case OutputDelta():
                call_id = body.params.itemId
                ops = self._open_result(call_id)
                ops.append(
                    AppendDelta(
                        native_item_id=f"{call_id}:result",
                        delta=body.params.delta,
                        kind=ItemKind.TOOL_RESULT,
                        role=ItemRole.TOOL,
                        parent_native_id=call_id,
                    )
                )
                return ops
            case CodexErrorNotification():
                message = str(body.params.error.get("message") or "codex error")
                return [ReportError(message=message, code="codex_error", details={"will_retry": body.params.willRetry})]
            case ApprovalRequest():
                return [self._approval(body)]
        return []

    def _turn_completed(self, params: TurnParams) -> list[Operation]:
        turn = params.turn
        self._active_turn = None
        ops: list[Operation] = []
        if turn.status == "failed" and turn.error:
            ops.append(ReportError(message=str(turn.error.get("message") or "turn failed"), code="turn_failed"))
        ops.append(EndTurn(turn_id=turn.id, status=turn.status or "completed"))
        return ops

    def _item_started(self, item: dict[str, Any]) -> list[Operation]:
        kind, role = _item_shape(item)
        content: list[ContentPart] = [_tool_call(item)] if kind == ItemKind.TOOL_CALL else []
        return [StartItem(native_item_id=item["id"], kind=kind, role=role, content=content)]

    def _item_completed(self, item: dict[str, Any]) -> list[Operation]:
        item_id = item["id"]
        kind, role = _item_shape(item)
        failed = _item_failed(item)
        status = ItemStatus.FAILED if failed else ItemStatus.COMPLETED
        if kind != ItemKind.TOOL_CALL:
            content = _message_content(item) or None
            return [CompleteItem(native_item_id=item_id, kind=kind, role=role, status=status, content=content)]

        ops: list[Operation] = [
            CompleteItem(native_item_id=item_id, kind=kind, role=role, status=status, content=[_tool_call(item)])
        ]
        result_id = f"{item_id}:result"
        result_parts: list[ContentPart]
        match item.get("type"):
            case "commandExecution":
                result_parts = [ToolResultPart(call_id=item_id, output=item.get("aggregatedOutput") or "")]
            case "fileChange":
                result_parts = _file_refs(item)
            case "mcpToolCall":
                output = item.get("error") if failed else item.get("result")
                result_parts = [ToolResultPart(call_id=item_id, output=flatten_output(output))]
            case _:
                # No structured output; an already streaming result keeps the raw item.
                result_parts = [JsonPart(value=item)] if result_id in self._open_results else []
        if not result_parts and result_id not in self._open_results:
            return ops
        ops.extend(self._open_result(item_id))
        ops.append(
            CompleteItem(
                native_item_id=result_id,
                kind=ItemKind.TOOL_RESULT,
                role=ItemRole.TOOL,
                status=status,
                content=result_parts or None,
                parent_native_id=item_id,
            )
        )
        self._open_results.discard(result_id)
        return ops

    def _open_result(self, call_id: str) -> list[Operation]:
        result_id = f"{call_id}:result"
        if result_id in self._open_results:
            return []
        self._open_results.add(result_id)
        return [
            StartItem(native_item_id=result_id, kind=ItemKind.TOOL_RESULT, role=ItemRole.TOOL, parent_native_id=call_id)
        ]

    def _approval(self, body: ApprovalRequest) -> RequestPermission:
        permission_id = f"codex-{body.id}"
        self._approvals[permission_id] = body.id
        params = body.params
        if body.method == "item/commandExecution/requestApproval":
            command = params.command
            if isinstance(command, list):
                command = " ".join(command)
            action = f"run: {command}" if command else "run command"
        else:
            action = "apply file changes"
        metadata = {"item_id": params.itemId, "reason": params.reason, "cwd": params.cwd}
        return RequestPermission(
            permission_id=permission_id,
            action=action,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    # -- Serialization ---------------------------------------------------------

    def thread_start_request(self, request_id: int, init: SessionInit) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if init.model:
            params["model"] = init.model
        if init.cwd:
            params["cwd"] = init.cwd
        if init.permission_mode == "bypass":
            params["approvalPolicy"] = "never"
            params["sandbox"] = "danger-full-access"
        else:
            params["approvalPolicy"] = "on-request"
        return {"method": "thread/start", "id": request_id, "params": params}

    def turn_start_request(self, request_id: int, thread_id: str, content: list[InputPart]) -> dict[str, Any]:
        inputs: list[dict[str, Any]] = []
        text = prompt_text([p for p in content if p.type != InputPartType.IMAGE])
        if text:
            inputs.append({"type": "text", "text": text})
        for part in content:
            if part.type != InputPartType.IMAGE:
                continue
            if part.path:
                inputs.append({"type": "localImage", "path": part.path})
            else:
                inputs.append({"type": "image", "url": f"data:{part.mime or 'image/png'};base64,{part.data}"})
        return {"method": "turn/start", "id": request_id, "params": {"threadId": thread_id, "input": inputs}}

    def interrupt_request(self, request_id: int, thread_id: str) -> dict[str, Any] | None:
        if self._active_turn is None:
            return None
        return {
            "method": "turn/interrupt",
            "id": request_id,
            "params": {"threadId": thread_id, "turnId": self._active_turn},
        }

    def permission_response(self, permission_id: str, reply: PermissionReply) -> dict[str, Any]:
        """JSON-RPC response answering a pending approval request."""
        try:
            request_id = self._approvals.pop(permission_id)
        except KeyError:
            raise LookupError(permission_id) from None
        return {"id": request_id, "result": {"decision": _DECISIONS[reply]}}


def initialize_request(request_id: int, version: str) -> dict[str, Any]:
    return {
        "method": "initialize",
        "id": request_id,
        "params": {"clientInfo": {"name": CLIENT_NAME, "title": CLIENT_NAME, "version": version}},
    }


def initialized_notification() -> dict[str, Any]:
    return {"method": "initialized"}
