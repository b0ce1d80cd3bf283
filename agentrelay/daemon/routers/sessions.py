"""Session endpoints (RPC-style).

Thin HTTP adapter -- delegates to the supervisor and translates its
exceptions into status codes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, Header, HTTPException, Query, status
from sse_starlette.sse import EventSourceResponse

from agentrelay.daemon.deps import SupervisorDep
from agentrelay.daemon.errors import (
    AgentRelayError,
    AgentUnavailableError,
    SessionTerminatedError,
    ShuttingDownError,
    UnsupportedOperationError,
)
from agentrelay.daemon.models.api import (
    AbortResponse,
    MessageSend,
    PermissionReplyBody,
    PromptAck,
    QuestionReply,
    SessionCreate,
)
from agentrelay.daemon.models.events import UniversalEvent
from agentrelay.daemon.models.session import SessionInfo

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _http_error(exc: LookupError | AgentRelayError) -> HTTPException:
    """Map a supervisor exception to its HTTP status."""
    detail = str(exc) or type(exc).__name__
    match exc:
        case LookupError():
            code = status.HTTP_404_NOT_FOUND
        case SessionTerminatedError():
            code = status.HTTP_409_CONFLICT
        case UnsupportedOperationError():
            code = status.HTTP_400_BAD_REQUEST
        case AgentUnavailableError() | ShuttingDownError():
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        case _:
            code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(code, detail=detail)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/create", response_model=SessionInfo, status_code=status.HTTP_201_CREATED)
async def create_session(body: SessionCreate, supervisor: SupervisorDep) -> SessionInfo:
    """Open a session with an agent.  The agent binary is resolved first."""
    try:
        return await supervisor.create_session(body.agent, body.init)
    except AgentRelayError as exc:
        raise _http_error(exc) from None


@router.get("/list", response_model=list[SessionInfo])
async def list_sessions(supervisor: SupervisorDep) -> list[SessionInfo]:
    return supervisor.list_sessions()


@router.get("/{session_id}/get", response_model=SessionInfo)
async def get_session(session_id: str, supervisor: SupervisorDep) -> SessionInfo:
    try:
        return supervisor.get_session(session_id)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.") from None


@router.post("/{session_id}/terminate", response_model=SessionInfo)
async def terminate_session(session_id: str, supervisor: SupervisorDep) -> SessionInfo:
    """Terminate a session.  Terminating an ended session is a no-op."""
    try:
        await supervisor.terminate(session_id)
        return supervisor.get_session(session_id)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.") from None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@router.post("/{session_id}/send", response_model=PromptAck, status_code=status.HTTP_202_ACCEPTED)
async def send_message(session_id: str, body: MessageSend, supervisor: SupervisorDep) -> PromptAck:
    """Queue a prompt.  Prompts are handed to the agent one turn at a time."""
    try:
        return await supervisor.send_prompt(session_id, body.content, wait=body.wait)
    except (LookupError, AgentRelayError) as exc:
        raise _http_error(exc) from None


@router.post("/{session_id}/abort", response_model=AbortResponse)
async def abort_turn(session_id: str, supervisor: SupervisorDep) -> AbortResponse:
    try:
        aborted = await supervisor.abort(session_id)
    except (LookupError, AgentRelayError) as exc:
        raise _http_error(exc) from None
    return AbortResponse(session_id=session_id, aborted=aborted)


# ---------------------------------------------------------------------------
# Human in the loop
# ---------------------------------------------------------------------------


@router.post("/{session_id}/questions/{question_id}/reply", status_code=status.HTTP_204_NO_CONTENT)
async def reply_question(session_id: str, question_id: str, body: QuestionReply, supervisor: SupervisorDep) -> None:
    try:
        await supervisor.reply_question(session_id, question_id, body.answers)
    except (LookupError, AgentRelayError) as exc:
        raise _http_error(exc) from None


@router.post("/{session_id}/questions/{question_id}/reject", status_code=status.HTTP_204_NO_CONTENT)
async def reject_question(session_id: str, question_id: str, supervisor: SupervisorDep) -> None:
    try:
        await supervisor.reject_question(session_id, question_id)
    except (LookupError, AgentRelayError) as exc:
        raise _http_error(exc) from None


@router.post("/{session_id}/permissions/{permission_id}/reply", status_code=status.HTTP_204_NO_CONTENT)
async def reply_permission(
    session_id: str,
    permission_id: str,
    body: PermissionReplyBody,
    supervisor: SupervisorDep,
) -> None:
    try:
        await supervisor.reply_permission(session_id, permission_id, body.reply)
    except (LookupError, AgentRelayError) as exc:
        raise _http_error(exc) from None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.get("/{session_id}/events", response_model=list[UniversalEvent])
async def list_events(
    session_id: str,
    supervisor: SupervisorDep,
    offset: int = Query(0, ge=0, description="Return events with sequence > offset."),
    include_raw: bool = Query(False, description="Include the native payload of each event."),
) -> list[UniversalEvent]:
    try:
        return supervisor.read_events(session_id, offset, include_raw=include_raw)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.") from None


@router.get("/{session_id}/events/stream")
async def stream_events(
    session_id: str,
    supervisor: SupervisorDep,
    offset: int = Query(0, ge=0, description="Resume after this sequence number."),
    include_raw: bool = Query(False, description="Include the native payload of each event."),
    last_event_id: str | None = Header(None, alias="Last-Event-ID"),
) -> EventSourceResponse:
    """Server-sent event stream of a session, resumable by sequence.

    A reconnecting ``EventSource`` sends ``Last-Event-ID``; it takes
    precedence over ``offset``.  The stream ends after ``session.ended``.
    """
    if last_event_id and last_event_id.isdigit():
        offset = int(last_event_id)
    try:
        events = supervisor.stream_events(session_id, offset, include_raw=include_raw)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.") from None

    async def _frames() -> AsyncIterator[dict[str, str]]:
        async for event in events:
            yield {"id": str(event.sequence), "event": str(event.type), "data": event.model_dump_json()}

    return EventSourceResponse(_frames())
