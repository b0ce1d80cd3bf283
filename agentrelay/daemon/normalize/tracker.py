"""Session/item state tracker.

The authoritative state for every live session: the sequence counter, the
item table with per-item lifecycle state, the native-id maps and the pending
HITL requests.  All mutation of one session happens while holding
``SessionState.lock``; the normalizer acquires it once per native event so
concurrent bursts (tool progress and message deltas arriving together) can
never interleave out of allocation order.  Different sessions have different
locks and proceed in parallel.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from agentrelay.daemon.errors import SessionNotFoundError
from agentrelay.daemon.models.enums import AgentKind, EventSource, EventType, ItemKind, ItemRole, ItemStatus
from agentrelay.daemon.models.events import EventData, UniversalEvent, utc_now
from agentrelay.daemon.models.items import ContentPart, UniversalItem
from agentrelay.daemon.normalize.sink import EventSink

_TERMINAL = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED})


@dataclass
class ItemState:
    """Tracker-side bookkeeping for one universal item."""

    item: UniversalItem
    delta_count: int = 0
    buffer: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.item.status in _TERMINAL

    @property
    def streamed_text(self) -> str:
        return "".join(self.buffer)


class SessionState:
    """State for a single session.  Owned by the ``StateTracker``."""

    def __init__(
        self,
        session_id: str,
        agent: AgentKind,
        sink: EventSink,
        *,
        native_session_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.agent = agent
        self.native_session_id = native_session_id
        self.created_at: datetime = utc_now()
        self.lock = asyncio.Lock()

        self._sink = sink
        self._next_sequence = 1

        # -- Lifecycle ---------------------------------------------------------
        self.started = False
        self.ended = False
        self.turn_open = False
        self.turn_id: str | None = None
        self._turn_counter = 0

        # -- Items -------------------------------------------------------------
        self.items: dict[str, ItemState] = {}
        self.native_items: dict[str, str] = {}
        """native_item_id -> item_id; entries are never removed while live."""

        # -- HITL --------------------------------------------------------------
        self.pending_permissions: dict[str, str] = {}
        self.pending_questions: dict[str, str] = {}

    # -- Sequencing ------------------------------------------------------------

    @property
    def last_sequence(self) -> int:
        return self._next_sequence - 1

    async def emit(
        self,
        event_type: EventType,
        data: EventData,
        *,
        source: EventSource = EventSource.AGENT,
        raw: Any = None,
    ) -> UniversalEvent:
        """Allocate the next sequence number and publish one event.

        Callers must hold ``self.lock``.  ``synthetic`` is derived from
        ``source`` so a daemon-authored event can never claim to be native.
        """
        event = UniversalEvent(
            event_id=uuid.uuid4().hex,
            sequence=self._next_sequence,
            session_id=self.session_id,
            native_session_id=self.native_session_id,
            source=source,
            synthetic=source == EventSource.DAEMON,
            type=event_type,
            data=data,
            raw=raw,
        )
        self._next_sequence += 1
        await self._sink.publish(event)
        return event

    async def close_stream(self) -> None:
        await self._sink.close(self.session_id)

    # -- Turns -----------------------------------------------------------------

    def open_turn(self, turn_id: str | None) -> str:
        self._turn_counter += 1
        self.turn_id = turn_id or f"turn_{self._turn_counter}"
        self.turn_open = True
        return self.turn_id

    def close_turn(self) -> str | None:
        turn_id = self.turn_id
        self.turn_open = False
        self.turn_id = None
        return turn_id

    # -- Items -----------------------------------------------------------------

    def find_item(self, native_item_id: str) -> ItemState | None:
        item_id = self.native_items.get(native_item_id)
        return self.items.get(item_id) if item_id else None

    def open_item(
        self,
        native_item_id: str,
        kind: ItemKind,
        role: ItemRole | None,
        *,
        parent_native_id: str | None = None,
        content: list[ContentPart] | None = None,
    ) -> ItemState:
        """Create an in-progress item and register its native id."""
        parent_id = self.native_items.get(parent_native_id) if parent_native_id else None
        item = UniversalItem(
            item_id=uuid.uuid4().hex,
            native_item_id=native_item_id,
            parent_id=parent_id,
            kind=kind,
            role=role,
            status=ItemStatus.IN_PROGRESS,
            content=list(content or []),
        )
        state = ItemState(item=item)
        self.items[item.item_id] = state
        self.native_items[native_item_id] = item.item_id
        return state

    def open_items(self) -> list[ItemState]:
        return [s for s in self.items.values() if not s.is_terminal]

    def bind_native_session(self, native_session_id: str) -> None:
        if self.native_session_id and self.native_session_id != native_session_id:
            logger.warning(
                "Session {}: native session id changed {} -> {}",
                self.session_id,
                self.native_session_id,
                native_session_id,
            )
        self.native_session_id = native_session_id


class StateTracker:
    """Registry of session states with the native-session-id map.

    Instantiated once per daemon and shared by the supervisor and the
    normalizers it creates.
    """

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._sessions: dict[str, SessionState] = {}
        self._native: dict[tuple[AgentKind, str], str] = {}

    @property
    def sink(self) -> EventSink:
        return self._sink

    def create(self, agent: AgentKind, *, native_session_id: str | None = None) -> SessionState:
        session_id = uuid.uuid4().hex
        state = SessionState(session_id, agent, self._sink, native_session_id=native_session_id)
        self._sessions[session_id] = state
        if native_session_id:
            self._native[(agent, native_session_id)] = session_id
        logger.debug("Tracker: created session {} (agent={})", session_id, agent)
        return state

    def get(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            msg = f"Session '{session_id}' not found"
            raise SessionNotFoundError(msg)
        return state

    def bind_native(self, state: SessionState, native_session_id: str) -> None:
        """Add a ``native_session_id -> session_id`` entry and update the state."""
        state.bind_native_session(native_session_id)
        self._native[(state.agent, native_session_id)] = state.session_id

    def by_native(self, agent: AgentKind, native_session_id: str) -> SessionState | None:
        session_id = self._native.get((agent, native_session_id))
        return self._sessions.get(session_id) if session_id else None

    def remove(self, session_id: str) -> SessionState | None:
        state = self._sessions.pop(session_id, None)
        if state is not None and state.native_session_id:
            self._native.pop((state.agent, state.native_session_id), None)
        return state

    def all_sessions(self) -> list[SessionState]:
        return list(self._sessions.values())
