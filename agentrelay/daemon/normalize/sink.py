"""Event sinks -- where ordered universal events are delivered.

The normalization core does not persist history.  It publishes every event
to an ``EventSink``; the default ``EventLog`` keeps events in memory so the
``stream_events`` operation can serve and resume per-session streams.  A
durable sink (SQL, actor-backed, ...) can be plugged in by implementing the
same protocol.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from loguru import logger

from agentrelay.daemon.errors import SessionNotFoundError
from agentrelay.daemon.models.events import UniversalEvent


@runtime_checkable
class EventSink(Protocol):
    """Async protocol for receiving the ordered event stream of each session."""

    async def publish(self, event: UniversalEvent) -> None:
        """Deliver one event.  Called in ``sequence`` order per session."""
        ...

    async def close(self, session_id: str) -> None:
        """Mark a session's stream as finished (no more events will follow)."""
        ...


class EventLog:
    """In-memory implementation of the EventSink protocol.

    Events are stored per session in sequence order, so ``sequence == index + 1``
    and ``offset`` maps directly onto a list slice.
    """

    def __init__(self) -> None:
        self._events: dict[str, list[UniversalEvent]] = {}
        self._closed: set[str] = set()
        self._changed = asyncio.Condition()

    # -- EventSink -------------------------------------------------------------

    async def publish(self, event: UniversalEvent) -> None:
        events = self._events.setdefault(event.session_id, [])
        expected = len(events) + 1
        if event.sequence != expected:
            msg = f"Out-of-order event for session {event.session_id}: got {event.sequence}, expected {expected}"
            raise ValueError(msg)
        events.append(event)
        async with self._changed:
            self._changed.notify_all()

    async def close(self, session_id: str) -> None:
        self._events.setdefault(session_id, [])
        self._closed.add(session_id)
        logger.debug("EventLog: closed stream for session {}", session_id)
        async with self._changed:
            self._changed.notify_all()

    # -- Query -----------------------------------------------------------------

    def register(self, session_id: str) -> None:
        """Make a session known before its first event is published."""
        self._events.setdefault(session_id, [])

    def discard(self, session_id: str) -> None:
        """Forget a session that never got past creation."""
        self._events.pop(session_id, None)
        self._closed.discard(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._events

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed

    def last_sequence(self, session_id: str) -> int:
        return len(self._events.get(session_id, []))

    def read(self, session_id: str, offset: int = 0, *, include_raw: bool = False) -> list[UniversalEvent]:
        """Return the stored events with ``sequence > offset``."""
        events = self._events.get(session_id)
        if events is None:
            msg = f"Session '{session_id}' not found"
            raise SessionNotFoundError(msg)
        batch = events[max(offset, 0) :]
        if include_raw:
            return list(batch)
        return [e.without_raw() for e in batch]

    async def follow(
        self,
        session_id: str,
        offset: int = 0,
        *,
        include_raw: bool = False,
    ) -> AsyncIterator[UniversalEvent]:
        """Yield events with ``sequence > offset``, waiting for new ones.

        The iterator ends once the session's stream is closed and every
        stored event has been yielded.
        """
        cursor = max(offset, 0)
        while True:
            batch = self.read(session_id, cursor, include_raw=include_raw)
            for event in batch:
                cursor = event.sequence
                yield event
            if session_id in self._closed and cursor >= self.last_sequence(session_id):
                return
            async with self._changed:
                await self._changed.wait_for(
                    lambda: self.last_sequence(session_id) > cursor or session_id in self._closed,
                )
