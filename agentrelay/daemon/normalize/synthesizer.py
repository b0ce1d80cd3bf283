"""Synthetic event policies.

Fills protocol gaps so every session looks capability-complete to
consumers.  Events authored here are emitted with ``source=daemon`` (and so
``synthetic=true``), with one exception: the single full-content delta for
agents without native streaming carries agent-authored text only and is
emitted as an agent event.

All methods expect the caller to hold the session lock.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from agentrelay.daemon.models.enums import (
    EventSource,
    EventType,
    ItemKind,
    ItemRole,
    ItemStatus,
    SessionEndReason,
)
from agentrelay.daemon.models.events import (
    ItemDeltaData,
    ItemEventData,
    SessionEndedData,
    SessionStartedData,
    StderrOutput,
    TurnEventData,
)
from agentrelay.daemon.models.session import AgentCapabilities
from agentrelay.daemon.normalize.tracker import ItemState, SessionState


class Synthesizer:
    """Capability-gap filler for one agent kind."""

    def __init__(self, capabilities: AgentCapabilities) -> None:
        self._capabilities = capabilities

    async def ensure_session_started(self, state: SessionState) -> None:
        """Emit ``session.started`` before the first real event if the agent did not."""
        if state.started:
            return
        state.started = True
        await state.emit(
            EventType.SESSION_STARTED,
            SessionStartedData(metadata={"agent": str(state.agent)}),
            source=EventSource.DAEMON,
        )

    async def ensure_turn_started(self, state: SessionState) -> None:
        if state.turn_open:
            return
        turn_id = state.open_turn(None)
        await state.emit(EventType.TURN_STARTED, TurnEventData(turn_id=turn_id), source=EventSource.DAEMON)

    async def stub_item(
        self,
        state: SessionState,
        native_item_id: str,
        kind: ItemKind,
        role: ItemRole | None,
        parent_native_id: str | None = None,
    ) -> ItemState:
        """Open an item retroactively because a delta/completion arrived first."""
        item_state = state.open_item(native_item_id, kind, role, parent_native_id=parent_native_id)
        logger.debug("Session {}: stub item.started for native item {}", state.session_id, native_item_id)
        await state.emit(
            EventType.ITEM_STARTED,
            ItemEventData(item=item_state.item.model_copy(deep=True)),
            source=EventSource.DAEMON,
        )
        return item_state

    async def buffered_delta(self, state: SessionState, item_state: ItemState, *, raw: Any = None) -> None:
        """Emit one full-content delta right before completion for non-streaming agents."""
        if self._capabilities.streaming_deltas or item_state.delta_count:
            return
        text = item_state.item.text()
        if not text:
            return
        item_state.delta_count += 1
        await state.emit(
            EventType.ITEM_DELTA,
            ItemDeltaData(
                item_id=item_state.item.item_id,
                native_item_id=item_state.item.native_item_id,
                delta=text,
            ),
            source=EventSource.AGENT,
            raw=raw,
        )

    async def close_dangling(self, state: SessionState) -> None:
        """Fail items and close the turn left open by an ending session."""
        for item_state in state.open_items():
            item_state.item.status = ItemStatus.FAILED
            await state.emit(
                EventType.ITEM_COMPLETED,
                ItemEventData(item=item_state.item.model_copy(deep=True)),
                source=EventSource.DAEMON,
            )
        if state.turn_open:
            turn_id = state.close_turn()
            await state.emit(
                EventType.TURN_ENDED,
                TurnEventData(turn_id=turn_id, status="interrupted"),
                source=EventSource.DAEMON,
            )

    async def session_ended(
        self,
        state: SessionState,
        reason: SessionEndReason,
        *,
        exit_code: int | None = None,
        stderr: StderrOutput | None = None,
        message: str | None = None,
    ) -> None:
        """Emit ``session.ended`` for a session the agent did not close itself."""
        await self.ensure_session_started(state)
        await self.close_dangling(state)
        await state.emit(
            EventType.SESSION_ENDED,
            SessionEndedData(
                reason=reason,
                terminated_by=EventSource.DAEMON,
                message=message,
                exit_code=exit_code,
                stderr=stderr if reason == SessionEndReason.ERROR else None,
            ),
            source=EventSource.DAEMON,
        )


def infer_end_reason(exit_code: int | None, *, turn_pending: bool) -> SessionEndReason:
    """``completed`` for a clean exit between turns, ``error`` otherwise."""
    if exit_code == 0 and not turn_pending:
        return SessionEndReason.COMPLETED
    return SessionEndReason.ERROR


def stderr_output(head_lines: list[str], tail_lines: list[str], total_lines: int) -> StderrOutput:
    """Build a ``StderrOutput`` from a bounded capture.

    ``head_lines`` are the first lines seen and ``tail_lines`` the last lines
    seen *after* the head.  When nothing was dropped in between, the two are
    joined back into a single untruncated ``head``.
    """
    if total_lines <= len(head_lines) + len(tail_lines):
        return StderrOutput(head="\n".join([*head_lines, *tail_lines]), truncated=False, total_lines=total_lines)
    return StderrOutput(
        head="\n".join(head_lines),
        tail="\n".join(tail_lines),
        truncated=True,
        total_lines=total_lines,
    )
