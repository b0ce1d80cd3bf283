"""OpenCode adapter -- ``opencode serve`` HTTP API plus the ``/event`` SSE bus.

One server process is shared by every OpenCode session of the same build.
Sessions are created over HTTP; everything the agent does is published on
a single SSE stream whose ``data:`` payloads look like
``{"type": "...", "properties": {...}}`` and carry a ``sessionID`` somewhere
in ``properties``.  Text and reasoning parts are re-sent whole on every
update; a ``delta`` field is present on newer builds and preferred.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentrelay.daemon.agents.base import NativeEvent, dump_arguments, flatten_output
from agentrelay.daemon.agents.decoding import parse_json_line, validate
from agentrelay.daemon.errors import DecodeError
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    InputPartType,
    ItemKind,
    ItemRole,
    ItemStatus,
    PermissionReply,
    PermissionStatus,
    QuestionStatus,
    ReasoningVisibility,
)
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.items import ReasoningPart, TextPart, ToolCallPart, ToolResultPart
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit
from agentrelay.daemon.normalize.diffing import PendingDeltaBuffer
from agentrelay.daemon.normalize.operations import (
    AppendDelta,
    CompleteItem,
    EndSession,
    EndTurn,
    Operation,
    ReportError,
    RequestPermission,
    RequestQuestion,
    ResolvePermission,
    ResolveQuestion,
    StartItem,
    StartSession,
    StartTurn,
)

logger = logging.getLogger(__name__)

# Bus events with no session-level meaning for consumers.
IGNORED_EVENTS = frozenset(
    {
        "server.connected",
        "server.heartbeat",
        "installation.updated",
        "installation.update-available",
        "lsp.updated",
        "lsp.client.diagnostics",
        "file.edited",
        "file.watcher.updated",
        "ide.installed",
        "vcs.branch.updated",
        "session.updated",
        "session.diff",
        "session.compacted",
        "message.removed",
        "message.part.removed",
        "todo.updated",
        "command.executed",
        "tui.prompt.append",
        "tui.command.execute",
        "tui.toast.show",
    }
)

# Part types that never become items.
_SILENT_PARTS = frozenset({"step-start", "step-finish", "snapshot", "patch", "agent", "retry", "compaction", "subtask"})


# ---------------------------------------------------------------------------
# Native schema
# ---------------------------------------------------------------------------


class _OpenCodeModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class OpenCodeEnvelope(_OpenCodeModel):
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class OpenCodeSessionInfo(_OpenCodeModel):
    id: str
    title: str | None = None
    directory: str | None = None


class OpenCodeMessageInfo(_OpenCodeModel):
    id: str
    sessionID: str  # noqa: N815
    role: str
    time: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class OpenCodePart(_OpenCodeModel):
    id: str
    sessionID: str  # noqa: N815
    messageID: str  # noqa: N815
    type: str
    text: str | None = None
    time: dict[str, Any] | None = None
    callID: str | None = None  # noqa: N815
    tool: str | None = None
    state: dict[str, Any] | None = None


class OpenCodePartUpdated(_OpenCodeModel):
    part: OpenCodePart
    delta: str | None = None


class OpenCodeSessionStatus(_OpenCodeModel):
    sessionID: str  # noqa: N815
    status: dict[str, Any]


class OpenCodeSessionError(_OpenCodeModel):
    sessionID: str | None = None  # noqa: N815
    error: dict[str, Any] | None = None


class OpenCodePermission(_OpenCodeModel):
    id: str
    sessionID: str  # noqa: N815
    title: str | None = None
    permission: str | None = None
    type: str | None = None
    pattern: str | list[str] | None = None
    metadata: dict[str, Any] | None = None


class OpenCodePermissionReplied(_OpenCodeModel):
    sessionID: str  # noqa: N815
    requestID: str | None = None  # noqa: N815
    permissionID: str | None = None  # noqa: N815
    reply: str | None = None
    response: str | None = None


class OpenCodeQuestionOption(_OpenCodeModel):
    label: str
    description: str | None = None


class OpenCodeQuestionInfo(_OpenCodeModel):
    question: str
    header: str | None = None
    options: list[OpenCodeQuestionOption] = Field(default_factory=list)
    multiple: bool = False


class OpenCodeQuestion(_OpenCodeModel):
    id: str
    sessionID: str  # noqa: N815
    questions: list[OpenCodeQuestionInfo]


class OpenCodeQuestionResolved(_OpenCodeModel):
    sessionID: str  # noqa: N815
    requestID: str  # noqa: N815
    answers: list[list[str]] | None = None


_SESSION_INFO: TypeAdapter[OpenCodeSessionInfo] = TypeAdapter(OpenCodeSessionInfo)
_MESSAGE_INFO: TypeAdapter[OpenCodeMessageInfo] = TypeAdapter(OpenCodeMessageInfo)
_PART_UPDATED: TypeAdapter[OpenCodePartUpdated] = TypeAdapter(OpenCodePartUpdated)
_SESSION_STATUS: TypeAdapter[OpenCodeSessionStatus] = TypeAdapter(OpenCodeSessionStatus)
_SESSION_ERROR: TypeAdapter[OpenCodeSessionError] = TypeAdapter(OpenCodeSessionError)
_PERMISSION: TypeAdapter[OpenCodePermission] = TypeAdapter(OpenCodePermission)
_PERMISSION_REPLIED: TypeAdapter[OpenCodePermissionReplied] = TypeAdapter(OpenCodePermissionReplied)
_QUESTION: TypeAdapter[OpenCodeQuestion] = TypeAdapter(OpenCodeQuestion)
_QUESTION_RESOLVED: TypeAdapter[OpenCodeQuestionResolved] = TypeAdapter(OpenCodeQuestionResolved)
_ENVELOPE: TypeAdapter[OpenCodeEnvelope] = TypeAdapter(OpenCodeEnvelope)

_PROPERTY_SCHEMAS: dict[str, TypeAdapter[Any]] = {
    "session.status": _SESSION_STATUS,
    "session.error": _SESSION_ERROR,
    "message.part.updated": _PART_UPDATED,
    "permission.asked": _PERMISSION,
    "permission.updated": _PERMISSION,
    "permission.replied": _PERMISSION_REPLIED,
    "question.asked": _QUESTION,
    "question.replied": _QUESTION_RESOLVED,
    "question.rejected": _QUESTION_RESOLVED,
}


def _decode_properties(event_type: str, properties: dict[str, Any]) -> Any:
    if event_type in ("session.created", "session.deleted"):
        return validate(_SESSION_INFO, properties.get("info"))
    if event_type == "message.updated":
        return validate(_MESSAGE_INFO, properties.get("info"))
    if event_type == "session.idle":
        # Idle carries only the session id.
        return OpenCodeSessionStatus(sessionID=properties.get("sessionID", ""), status={"type": "idle"})
    schema = _PROPERTY_SCHEMAS.get(event_type)
    if schema is None:
        raise DecodeError(f"unknown event type {event_type!r}", "$.type")
    return validate(schema, properties)


def session_key(payload: Any) -> str | None:
    """Native session id an SSE payload belongs to, if any."""
    if not isinstance(payload, dict):
        return None
    props = payload.get("properties")
    if not isinstance(props, dict):
        return None
    if isinstance(props.get("sessionID"), str):
        return props["sessionID"]
    for key in ("part", "info"):
        nested = props.get(key)
        if not isinstance(nested, dict):
            continue
        if isinstance(nested.get("sessionID"), str):
            return nested["sessionID"]
        if key == "info" and str(payload.get("type", "")).startswith("session.") and isinstance(nested.get("id"), str):
            return nested["id"]
    return None


# ---------------------------------------------------------------------------
# HTTP requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HttpRequest:
    method: str
    path: str
    json: Any = None
    params: dict[str, str] | None = None


def _file_url(part: InputPart) -> str:
    if part.data:
        return f"data:{part.mime or 'application/octet-stream'};base64,{part.data}"
    return f"file://{part.path}"


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class OpenCodeAdapter:
    """Mapping table for one OpenCode session on a shared server."""

    kind: ClassVar[AgentKind] = AgentKind.OPENCODE
    capabilities: ClassVar[AgentCapabilities] = AgentCapabilities(
        concurrency=ConcurrencyModel.SHARED_SERVER,
        native_session_start=True,
        native_session_end=True,
        streaming_deltas=True,
        abort=True,
        questions=True,
        permissions=True,
        images=True,
    )

    def __init__(self) -> None:
        self._roles: dict[str, str] = {}
        self._seen_parts: set[str] = set()
        self._done_parts: set[str] = set()
        self._open_results: set[str] = set()
        self._snapshots = PendingDeltaBuffer()
        self._busy = False

    def decode(self, frame: str) -> NativeEvent:
        payload = parse_json_line(frame)
        envelope = validate(_ENVELOPE, payload)
        if envelope.type in IGNORED_EVENTS:
            return NativeEvent(type=envelope.type, body=None, raw=payload)
        body = _decode_properties(envelope.type, envelope.properties)
        return NativeEvent(type=envelope.type, body=body, raw=payload)

    def convert(self, event: NativeEvent) -> list[Operation]:  # noqa: C901
        body = event.body
        if body is None:
            return []
        match event.type:
            case "session.created":
                return [StartSession(native_session_id=body.id, metadata={"directory": body.directory})]
            case "session.deleted":
                return [EndSession(message="session deleted")]
            case "session.status" | "session.idle":
                return self._status(body.status.get("type"))
            case "session.error":
                error = body.error or {}
                message = (error.get("data") or {}).get("message") or error.get("name") or "session error"
                return [ReportError(message=str(message), code=error.get("name"))]
            case "message.updated":
                return self._message_updated(body)
            case "message.part.updated":
                return self._part_updated(body)
            case "permission.asked" | "permission.updated":
                action = body.title or body.permission or body.type or "permission"
                metadata = {"pattern": body.pattern, **(body.metadata or {})}
                return [RequestPermission(permission_id=body.id, action=action, metadata=metadata)]
            case "permission.replied":
                permission_id = body.requestID or body.permissionID
                reply = body.reply or body.response
                status = PermissionStatus.DENIED if reply == "reject" else PermissionStatus.APPROVED
                return [ResolvePermission(permission_id=permission_id, status=status)]
            case "question.asked":
                return [self._question(body)]
            case "question.replied":
                return [
                    ResolveQuestion(question_id=body.requestID, status=QuestionStatus.ANSWERED, response=body.answers)
                ]
            case "question.rejected":
                return [ResolveQuestion(question_id=body.requestID, status=QuestionStatus.REJECTED)]
        return []

    # -- Mapping ---------------------------------------------------------------

    def _status(self, status: str | None) -> list[Operation]:
        if status in ("busy", "retry"):
            if self._busy:
                return []
            self._busy = True
            return [StartTurn()]
        if status == "idle" and self._busy:
            self._busy = False
            return [EndTurn(status="completed")]
        return []

    def _message_updated(self, info: OpenCodeMessageInfo) -> list[Operation]:
        self._roles[info.id] = info.role
        ops: list[Operation] = []
        if info.role == "assistant" and not self._busy and not (info.time or {}).get("completed"):
            # Older servers only report idle; a running assistant message opens the turn.
            self._busy = True
            ops.append(StartTurn())
        if info.error:
            message = (info.error.get("data") or {}).get("message") or info.error.get("name") or "message error"
            ops.append(ReportError(message=str(message), code=info.error.get("name")))
        return ops

    def _role(self, message_id: str) -> ItemRole:
        return ItemRole.USER if self._roles.get(message_id) == "user" else ItemRole.ASSISTANT

    def _part_updated(self, update: OpenCodePartUpdated) -> list[Operation]:
        part = update.part
        if part.type in _SILENT_PARTS or part.id in self._done_parts:
            return []
        if part.type in ("text", "reasoning"):
            return self._text_part(part, update.delta)
        if part.type == "tool":
            return self._tool_part(part)
        if part.type == "file":
            return []
        raise ValueError(f"unsupported part type {part.type!r}")

    def _text_part(self, part: OpenCodePart, delta: str | None) -> list[Operation]:
        role = self._role(part.messageID)
        ops: list[Operation] = []
        if part.id not in self._seen_parts:
            self._seen_parts.add(part.id)
            ops.append(
                StartItem(
                    native_item_id=part.id,
                    kind=ItemKind.MESSAGE,
                    role=role,
                    parent_native_id=part.messageID,
                )
            )

        text = part.text or ""
        computed = self._snapshots.advance(part.id, text)
        if delta is None:
            if computed.resync:
                logger.warning("OpenCode part %s: text is not a prefix extension; resending full value", part.id)
            delta, resync = computed.text, computed.resync
        else:
            resync = False
        if delta:
            ops.append(AppendDelta(native_item_id=part.id, delta=delta, resync=resync, role=role))

        ended = bool(part.time and part.time.get("end")) or role == ItemRole.USER
        if ended:
            self._done_parts.add(part.id)
            self._snapshots.discard(part.id)
            content = (
                [ReasoningPart(text=text, visibility=ReasoningVisibility.PUBLIC)]
                if part.type == "reasoning"
                else [TextPart(text=text)]
            )
            ops.append(CompleteItem(native_item_id=part.id, kind=ItemKind.MESSAGE, role=role, content=content))
        return ops

    def _tool_part(self, part: OpenCodePart) -> list[Operation]:
        state = part.state or {}
        status = state.get("status")
        call_id = part.callID or part.id
        ops: list[Operation] = []
        if status == "pending":
            return ops

        if call_id not in self._seen_parts:
            self._seen_parts.add(call_id)
            call = ToolCallPart(name=part.tool or "tool", arguments=dump_arguments(state.get("input")), call_id=call_id)
            ops.append(
                StartItem(
                    native_item_id=call_id,
                    kind=ItemKind.TOOL_CALL,
                    role=ItemRole.ASSISTANT,
                    parent_native_id=part.messageID,
                    content=[call],
                )
            )
            ops.append(CompleteItem(native_item_id=call_id, kind=ItemKind.TOOL_CALL, role=ItemRole.ASSISTANT))

        result_id = f"{call_id}:result"
        if result_id not in self._open_results:
            self._open_results.add(result_id)
            ops.append(
                StartItem(
                    native_item_id=result_id,
                    kind=ItemKind.TOOL_RESULT,
                    role=ItemRole.TOOL,
                    parent_native_id=call_id,
                )
            )

        if status == "running":
            progress = (state.get("metadata") or {}).get("output")
            if isinstance(progress, str):
                delta = self._snapshots.advance(result_id, progress)
                if delta.text:
                    ops.append(
                        AppendDelta(
                            native_item_id=result_id,
                            delta=delta.text,
                            resync=delta.resync,
                            kind=ItemKind.TOOL_RESULT,
                            role=ItemRole.TOOL,
                            parent_native_id=call_id,
                        )
                    )
            return ops

        if status in ("completed", "error"):
            self._done_parts.add(part.id)
            self._snapshots.discard(result_id)
            failed = status == "error"
            output = state.get("error") if failed else state.get("output")
            ops.append(
                CompleteItem(
                    native_item_id=result_id,
                    kind=ItemKind.TOOL_RESULT,
                    role=ItemRole.TOOL,
                    status=ItemStatus.FAILED if failed else ItemStatus.COMPLETED,
                    content=[ToolResultPart(call_id=call_id, output=flatten_output(output))],
                    parent_native_id=call_id,
                )
            )
        return ops

    def _question(self, body: OpenCodeQuestion) -> RequestQuestion:
        prompt = "\n".join(q.question for q in body.questions)
        options = [o.label for q in body.questions[:1] for o in q.options]
        return RequestQuestion(question_id=body.id, prompt=prompt, options=options)

    # -- Serialization ---------------------------------------------------------

    def command_args(self, binary: str) -> list[str]:
        return [binary, "serve", "--hostname", "127.0.0.1", "--port", "0"]

    def create_session_request(self, init: SessionInit) -> HttpRequest:
        params = {"directory": init.cwd} if init.cwd else None
        return HttpRequest("POST", "/session", json={}, params=params)

    def prompt_request(self, native_session_id: str, content: list[InputPart], init: SessionInit) -> HttpRequest:
        parts: list[dict[str, Any]] = []
        for part in content:
            if part.type == InputPartType.TEXT:
                parts.append({"type": "text", "text": part.text})
            else:
                filename = part.path.rsplit("/", 1)[-1] if part.path else "attachment"
                mime = part.mime or _guess_mime(part)
                parts.append({"type": "file", "mime": mime, "url": _file_url(part), "filename": filename})
        body: dict[str, Any] = {"parts": parts}
        if init.model and "/" in init.model:
            provider, model = init.model.split("/", 1)
            body["model"] = {"providerID": provider, "modelID": model}
        if init.agent_mode:
            body["agent"] = init.agent_mode
        return HttpRequest("POST", f"/session/{native_session_id}/prompt_async", json=body)

    def abort_request(self, native_session_id: str) -> HttpRequest:
        return HttpRequest("POST", f"/session/{native_session_id}/abort")

    def permission_request(self, permission_id: str, reply: PermissionReply) -> HttpRequest:
        return HttpRequest("POST", f"/permission/{permission_id}/reply", json={"reply": str(reply)})

    def question_reply_request(self, question_id: str, answers: list[list[str]]) -> HttpRequest:
        return HttpRequest("POST", f"/question/{question_id}/reply", json={"answers": answers})

    def question_reject_request(self, question_id: str) -> HttpRequest:
        return HttpRequest("POST", f"/question/{question_id}/reject")


def _guess_mime(part: InputPart) -> str:
    if part.type == InputPartType.IMAGE:
        return "image/png"
    return "text/plain"
