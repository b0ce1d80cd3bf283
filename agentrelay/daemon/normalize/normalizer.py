"""Normalizer -- applies adapter output to session state.

One ``Normalizer`` exists per session.  It is the single entry point for
native frames (``handle_native_event``) and for process-level outcomes
(``finish``).  Each call takes the session lock once, so every event
produced for one native frame is allocated contiguously and in order.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agentrelay.daemon.agents.decoding import raw_hash
from agentrelay.daemon.errors import DecodeError
from agentrelay.daemon.models.enums import (
    EventSource,
    EventType,
    ItemKind,
    PermissionStatus,
    QuestionStatus,
    SessionEndReason,
)
from agentrelay.daemon.models.events import (
    AgentUnparsedData,
    ErrorData,
    ItemDeltaData,
    ItemEventData,
    PermissionEventData,
    QuestionEventData,
    SessionEndedData,
    SessionStartedData,
    StderrOutput,
    TurnEventData,
)
from agentrelay.daemon.models.items import TextPart, ToolResultPart
from agentrelay.daemon.normalize.operations import (
    AppendDelta,
    BindNativeSession,
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
from agentrelay.daemon.normalize.synthesizer import Synthesizer

if TYPE_CHECKING:
    from agentrelay.daemon.agents.base import AgentAdapter
    from agentrelay.daemon.normalize.tracker import ItemState, SessionState, StateTracker

logger = logging.getLogger(__name__)

# Operations that do not count as the session's "first real event".
_BOOKKEEPING = (StartSession, BindNativeSession)


class Normalizer:
    """Per-session pipeline: decode -> convert -> apply."""

    def __init__(self, tracker: StateTracker, state: SessionState, adapter: AgentAdapter) -> None:
        self._tracker = tracker
        self._state = state
        self._adapter = adapter
        self._synth = Synthesizer(adapter.capabilities)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def adapter(self) -> AgentAdapter:
        return self._adapter

    # -- Entry points ----------------------------------------------------------

    async def handle_native_event(self, frame: str) -> list[Operation]:
        """Process one raw native frame.

        Returns the operations that were applied, so the caller can react to
        turn boundaries.  Unparseable frames produce exactly one
        ``agent.unparsed`` event and an empty list.
        """
        async with self._state.lock:
            if self._state.ended:
                logger.debug("Session %s ended; dropping native frame", self._state.session_id)
                return []
            try:
                native = self._adapter.decode(frame)
                ops = self._adapter.convert(native)
            except DecodeError as exc:
                await self._emit_unparsed(exc.error, exc.location, frame)
                return []
            except (KeyError, ValueError, TypeError) as exc:
                # Recognized shape with contents the mapping table cannot handle.
                await self._emit_unparsed(str(exc), f"convert:{type(exc).__name__}", frame)
                return []
            await self._apply_all(ops, raw=native.raw, source=EventSource.AGENT)
            return ops

    async def apply(self, ops: list[Operation], *, source: EventSource = EventSource.DAEMON, raw: Any = None) -> None:
        """Apply operations that originate in the daemon (HITL replies, ...)."""
        async with self._state.lock:
            if self._state.ended:
                return
            await self._apply_all(ops, raw=raw, source=source)

    async def finish(
        self,
        reason: SessionEndReason,
        *,
        exit_code: int | None = None,
        stderr: StderrOutput | None = None,
        message: str | None = None,
    ) -> bool:
        """Close the session with a synthesized ``session.ended``.

        Returns ``False`` when the session had already ended (for example
        because the agent sent its own session end).
        """
        async with self._state.lock:
            if self._state.ended:
                return False
            await self._synth.session_ended(
                self._state,
                reason,
                exit_code=exit_code,
                stderr=stderr,
                message=message,
            )
            self._state.ended = True
        await self._state.close_stream()
        return True

    # -- Application -----------------------------------------------------------

    async def _apply_all(self, ops: list[Operation], *, raw: Any, source: EventSource) -> None:
        for op in ops:
            if self._state.ended:
                logger.warning(
                    "Session %s: dropping %s after session end",
                    self._state.session_id,
                    type(op).__name__,
                )
                break
            if not isinstance(op, _BOOKKEEPING):
                await self._synth.ensure_session_started(self._state)
            await self._apply(op, raw, source)
        if self._state.ended:
            await self._state.close_stream()

    async def _apply(self, op: Operation, raw: Any, source: EventSource) -> None:  # noqa: C901
        state = self._state
        match op:
            case StartSession():
                if op.native_session_id:
                    self._tracker.bind_native(state, op.native_session_id)
                if state.started:
                    return
                state.started = True
                await state.emit(
                    EventType.SESSION_STARTED,
                    SessionStartedData(metadata=op.metadata),
                    source=source,
                    raw=raw,
                )
            case BindNativeSession():
                self._tracker.bind_native(state, op.native_session_id)
            case EndSession():
                await self._synth.close_dangling(state)
                await state.emit(
                    EventType.SESSION_ENDED,
                    SessionEndedData(reason=op.reason, terminated_by=EventSource.AGENT, message=op.message),
                    source=source,
                    raw=raw,
                )
                state.ended = True
            case StartTurn():
                if state.turn_open:
                    return
                turn_id = state.open_turn(op.turn_id)
                await state.emit(EventType.TURN_STARTED, TurnEventData(turn_id=turn_id), source=source, raw=raw)
            case EndTurn():
                if not state.turn_open:
                    await self._synth.ensure_turn_started(state)
                turn_id = state.close_turn()
                await state.emit(
                    EventType.TURN_ENDED,
                    TurnEventData(turn_id=op.turn_id or turn_id, status=op.status),
                    source=source,
                    raw=raw,
                )
            case StartItem():
                await self._start_item(op, raw, source)
            case AppendDelta():
                await self._append_delta(op, raw, source)
            case CompleteItem():
                await self._complete_item(op, raw, source)
            case ReportError():
                await state.emit(
                    EventType.ERROR,
                    ErrorData(message=op.message, code=op.code, details=op.details),
                    source=source,
                    raw=raw,
                )
            case RequestPermission():
                state.pending_permissions[op.permission_id] = op.action
                await state.emit(
                    EventType.PERMISSION_REQUESTED,
                    PermissionEventData(
                        permission_id=op.permission_id,
                        action=op.action,
                        status=PermissionStatus.REQUESTED,
                        metadata=op.metadata,
                    ),
                    source=source,
                    raw=raw,
                )
            case ResolvePermission():
                action = state.pending_permissions.pop(op.permission_id, None)
                if action is None:
                    logger.debug("Session %s: permission %s already resolved", state.session_id, op.permission_id)
                    return
                await state.emit(
                    EventType.PERMISSION_RESOLVED,
                    PermissionEventData(permission_id=op.permission_id, action=action, status=op.status),
                    source=source,
                    raw=raw,
                )
            case RequestQuestion():
                state.pending_questions[op.question_id] = op.prompt
                await state.emit(
                    EventType.QUESTION_REQUESTED,
                    QuestionEventData(
                        question_id=op.question_id,
                        prompt=op.prompt,
                        options=list(op.options),
                        status=QuestionStatus.REQUESTED,
                    ),
                    source=source,
                    raw=raw,
                )
            case ResolveQuestion():
                prompt = state.pending_questions.pop(op.question_id, None)
                if prompt is None:
                    logger.debug("Session %s: question %s already resolved", state.session_id, op.question_id)
                    return
                await state.emit(
                    EventType.QUESTION_RESOLVED,
                    QuestionEventData(
                        question_id=op.question_id,
                        prompt=prompt,
                        status=op.status,
                        response=op.response,
                    ),
                    source=source,
                    raw=raw,
                )

    # -- Items -----------------------------------------------------------------

    async def _start_item(self, op: StartItem, raw: Any, source: EventSource) -> None:
        state = self._state
        existing = state.find_item(op.native_item_id)
        if existing is not None:
            if existing.is_terminal:
                self._anomaly("item.started", existing)
            else:
                logger.debug("Session %s: duplicate start for item %s", state.session_id, op.native_item_id)
            return
        item_state = state.open_item(
            op.native_item_id,
            op.kind,
            op.role,
            parent_native_id=op.parent_native_id,
            content=op.content,
        )
        await state.emit(
            EventType.ITEM_STARTED,
            ItemEventData(item=item_state.item.model_copy(deep=True)),
            source=source,
            raw=raw,
        )

    async def _append_delta(self, op: AppendDelta, raw: Any, source: EventSource) -> None:
        if not op.delta:
            return
        state = self._state
        item_state = state.find_item(op.native_item_id)
        if item_state is None:
            item_state = await self._synth.stub_item(state, op.native_item_id, op.kind, op.role, op.parent_native_id)
        elif item_state.is_terminal:
            self._anomaly("item.delta", item_state)
            return
        if op.resync:
            item_state.buffer = [op.delta]
        else:
            item_state.buffer.append(op.delta)
        item_state.delta_count += 1
        await state.emit(
            EventType.ITEM_DELTA,
            ItemDeltaData(
                item_id=item_state.item.item_id,
                native_item_id=op.native_item_id,
                delta=op.delta,
                resync=op.resync,
            ),
            source=source,
            raw=raw,
        )

    async def _complete_item(self, op: CompleteItem, raw: Any, source: EventSource) -> None:
        state = self._state
        item_state = state.find_item(op.native_item_id)
        if item_state is None:
            item_state = await self._synth.stub_item(state, op.native_item_id, op.kind, op.role, op.parent_native_id)
        elif item_state.is_terminal:
            self._anomaly("item.completed", item_state)
            return

        item = item_state.item
        if op.content is not None:
            item.content = list(op.content)
        elif not item.content and item_state.buffer:
            item.content = [_content_from_buffer(item.kind, item_state, op)]

        await self._synth.buffered_delta(state, item_state, raw=raw)

        item.status = op.status
        await state.emit(
            EventType.ITEM_COMPLETED,
            ItemEventData(item=item.model_copy(deep=True)),
            source=source,
            raw=raw,
        )

    # -- Diagnostics -----------------------------------------------------------

    async def _emit_unparsed(self, error: str, location: str, frame: str) -> None:
        logger.warning(
            "Session %s: unparsed %s frame at %s: %s",
            self._state.session_id,
            self._state.agent,
            location,
            error,
        )
        await self._state.emit(
            EventType.AGENT_UNPARSED,
            AgentUnparsedData(error=error, location=location, raw_hash=raw_hash(frame)),
            source=EventSource.DAEMON,
            raw=frame,
        )

    def _anomaly(self, event: str, item_state: ItemState) -> None:
        logger.warning(
            "Session %s: dropping late %s for terminal item %s (native=%s)",
            self._state.session_id,
            event,
            item_state.item.item_id,
            item_state.item.native_item_id,
        )


def _content_from_buffer(kind: ItemKind, item_state: ItemState, op: CompleteItem) -> TextPart | ToolResultPart:
    text = item_state.streamed_text
    if kind == ItemKind.TOOL_RESULT:
        return ToolResultPart(call_id=op.parent_native_id or op.native_item_id, output=text)
    return TextPart(text=text)


