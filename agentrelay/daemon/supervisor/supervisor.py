"""Supervisor -- session lifecycle over the three concurrency models.

The supervisor is the daemon's single entry point for session operations.
It resolves agent binaries, creates per-session state and normalizers,
picks the backend for the agent's concurrency model and tears everything
down again when a session is terminated, ends on its own, or the daemon
shuts down.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from loguru import logger

from agentrelay.daemon.agents import capabilities_of, create_adapter
from agentrelay.daemon.agents.base import has_images
from agentrelay.daemon.errors import (
    SessionNotFoundError,
    SessionTerminatedError,
    ShuttingDownError,
    UnknownRequestError,
    UnsupportedOperationError,
)
from agentrelay.daemon.models.api import AgentDescriptor, PromptAck
from agentrelay.daemon.models.enums import AgentKind, PermissionReply, SessionEndReason
from agentrelay.daemon.models.events import UniversalEvent
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.session import SessionInfo, SessionInit
from agentrelay.daemon.normalize.normalizer import Normalizer
from agentrelay.daemon.normalize.sink import EventLog
from agentrelay.daemon.normalize.tracker import StateTracker
from agentrelay.daemon.registry import ProcessRegistry
from agentrelay.daemon.settings import RelaySettings
from agentrelay.daemon.supervisor.backends import backend_for
from agentrelay.daemon.supervisor.installer import AgentInstaller, PathInstaller
from agentrelay.daemon.supervisor.session import PendingPrompt, SessionHandle


class Supervisor:
    """Owns every session handle and the event log they publish to."""

    def __init__(
        self,
        settings: RelaySettings,
        *,
        events: EventLog | None = None,
        registry: ProcessRegistry | None = None,
        installer: AgentInstaller | None = None,
    ) -> None:
        self.settings = settings
        self.events = events or EventLog()
        self.registry = registry or ProcessRegistry()
        self.installer = installer or PathInstaller(settings)
        self.tracker = StateTracker(self.events)
        # Live sessions keep their handle; closed ones shrink to their final info.
        self._sessions: dict[str, SessionHandle | SessionInfo] = {}
        self._teardowns: set[asyncio.Task[None]] = set()

    # -- Lookup ----------------------------------------------------------------

    def _entry(self, session_id: str) -> SessionHandle | SessionInfo:
        entry = self._sessions.get(session_id)
        if entry is None:
            msg = f"Session '{session_id}' not found"
            raise SessionNotFoundError(msg)
        return entry

    def _live(self, session_id: str) -> SessionHandle:
        entry = self._entry(session_id)
        if isinstance(entry, SessionInfo) or entry.closed or entry.ended:
            msg = f"Session '{session_id}' has ended"
            raise SessionTerminatedError(msg)
        return entry

    def get_session(self, session_id: str) -> SessionInfo:
        entry = self._entry(session_id)
        return entry if isinstance(entry, SessionInfo) else entry.info()

    def list_sessions(self) -> list[SessionInfo]:
        return [e if isinstance(e, SessionInfo) else e.info() for e in self._sessions.values()]

    def list_agents(self) -> list[AgentDescriptor]:
        return [AgentDescriptor(kind=kind, capabilities=capabilities_of(kind)) for kind in AgentKind]

    # -- Lifecycle -------------------------------------------------------------

    async def create_session(self, agent: AgentKind, init: SessionInit | None = None) -> SessionInfo:
        """Open a session with ``agent``.

        Raises ``AgentUnavailableError`` when the binary cannot be found and
        ``AgentCrashedError`` when the agent refuses the session.  On failure
        no session state and no events are left behind.
        """
        if self.registry.is_shutting_down:
            raise ShuttingDownError
        init = init or SessionInit()
        binary = await self.installer.resolve(agent)

        adapter = create_adapter(agent)
        state = self.tracker.create(agent)
        session_id = state.session_id
        self.events.register(session_id)
        handle = SessionHandle(
            agent,
            init,
            adapter,
            Normalizer(self.tracker, state, adapter),
            binary,
            on_ended=self._on_ended,
        )
        handle.backend = backend_for(handle, self.settings, self.registry)
        try:
            self.registry.register_session(session_id, agent)
            await handle.backend.open()
        except BaseException:
            # Also reached on cancellation: the half-opened backend may own a
            # process or a shared-server reference.
            handle.closed = True
            await asyncio.shield(self._discard(handle))
            raise

        self._sessions[session_id] = handle
        handle.start()
        logger.info("Supervisor: created {} session {} (binary={})", agent, session_id, binary.path)
        return handle.info()

    async def _discard(self, handle: SessionHandle) -> None:
        """Undo a session that never finished opening."""
        session_id = handle.session_id
        try:
            if handle.backend is not None:
                await handle.backend.close()
        finally:
            self.registry.detach_process(session_id)
            self.registry.unregister_session(session_id)
            self.tracker.remove(session_id)
            self.events.discard(session_id)

    async def terminate(self, session_id: str) -> None:
        """End a session on behalf of the client.  Idempotent."""
        handle = self._entry(session_id)
        if isinstance(handle, SessionInfo) or handle.closed:
            return
        await self._teardown(handle, SessionEndReason.TERMINATED)

    def _on_ended(self, handle: SessionHandle) -> None:
        """A session ended on its own (agent end, crash): release its resources."""
        task = asyncio.get_running_loop().create_task(self._teardown(handle, None))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def _teardown(self, handle: SessionHandle, reason: SessionEndReason | None) -> None:
        if handle.closed:
            return
        handle.closed = True
        session_id = handle.session_id
        await handle.stop_worker()
        if handle.backend is not None:
            await handle.backend.close()
        if reason is not None:
            await handle.normalizer.finish(reason, message="terminated by client")
        self.registry.detach_process(session_id)
        self.registry.unregister_session(session_id)
        self.tracker.remove(session_id)
        # Drop the adapter, normalizer and backend; the event log keeps the history.
        self._sessions[session_id] = handle.info()
        logger.info("Supervisor: session {} closed", session_id)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Graceful shutdown: finish queued work, then terminate everything."""
        self.registry.begin_shutdown()
        live = [h for h in self._sessions.values() if isinstance(h, SessionHandle) and not h.closed]
        if live:
            logger.info("Supervisor: waiting for {} sessions to finish queued prompts", len(live))
            try:
                await asyncio.wait_for(asyncio.gather(*(h.queue.join() for h in live)), timeout=timeout)
            except TimeoutError:
                logger.warning("Supervisor: queued prompts did not finish within {}s", timeout)
        for handle in live:
            await self._teardown(handle, SessionEndReason.TERMINATED)
        if self._teardowns:
            await asyncio.gather(*self._teardowns)
        await self.registry.wait_until_drained(timeout=self.settings.terminate_grace_seconds)
        await self.registry.stop_all(self.settings.terminate_grace_seconds)

    # -- Prompts ---------------------------------------------------------------

    async def send_prompt(self, session_id: str, content: list[InputPart], *, wait: bool = False) -> PromptAck:
        """Queue a prompt.  With ``wait`` the call returns once the agent has it."""
        if self.registry.is_shutting_down:
            raise ShuttingDownError
        handle = self._live(session_id)
        if has_images(content) and not handle.adapter.capabilities.images:
            msg = f"{handle.agent} does not accept image input"
            raise UnsupportedOperationError(msg)
        waiter = asyncio.get_running_loop().create_future() if wait else None
        handle.queue.put_nowait(PendingPrompt(content, waiter))
        queued = handle.queue.qsize()
        logger.debug("Supervisor: queued prompt for {} (depth={})", session_id, queued)
        if waiter is not None:
            await waiter
        return PromptAck(session_id=session_id, queued=queued, delivered=waiter is not None)

    async def abort(self, session_id: str) -> bool:
        """Abort the running turn.  Returns ``False`` when there was nothing to abort."""
        handle = self._live(session_id)
        if not handle.adapter.capabilities.abort:
            logger.info("Supervisor: {} cannot abort; ignoring abort for {}", handle.agent, session_id)
            return False
        assert handle.backend is not None
        return await handle.backend.abort()

    # -- Human in the loop -----------------------------------------------------

    def _question_handle(self, session_id: str, question_id: str) -> SessionHandle:
        handle = self._live(session_id)
        if not handle.adapter.capabilities.questions:
            msg = f"{handle.agent} does not ask questions"
            raise UnsupportedOperationError(msg)
        if question_id not in handle.normalizer.state.pending_questions:
            msg = f"No pending question '{question_id}'"
            raise UnknownRequestError(msg)
        return handle

    async def reply_question(self, session_id: str, question_id: str, answers: list[list[str]]) -> None:
        handle = self._question_handle(session_id, question_id)
        assert handle.backend is not None
        await handle.backend.reply_question(question_id, answers)

    async def reject_question(self, session_id: str, question_id: str) -> None:
        handle = self._question_handle(session_id, question_id)
        assert handle.backend is not None
        await handle.backend.reject_question(question_id)

    async def reply_permission(self, session_id: str, permission_id: str, reply: PermissionReply) -> None:
        handle = self._live(session_id)
        if not handle.adapter.capabilities.permissions:
            msg = f"{handle.agent} does not request permissions"
            raise UnsupportedOperationError(msg)
        if permission_id not in handle.normalizer.state.pending_permissions:
            msg = f"No pending permission request '{permission_id}'"
            raise UnknownRequestError(msg)
        assert handle.backend is not None
        await handle.backend.reply_permission(permission_id, reply)

    # -- Events ----------------------------------------------------------------

    def read_events(self, session_id: str, offset: int = 0, *, include_raw: bool = False) -> list[UniversalEvent]:
        return self.events.read(session_id, offset, include_raw=include_raw)

    def stream_events(
        self,
        session_id: str,
        offset: int = 0,
        *,
        include_raw: bool = False,
    ) -> AsyncIterator[UniversalEvent]:
        """Follow a session's events from ``offset``; ends after ``session.ended``."""
        if not self.events.has_session(session_id):
            msg = f"Session '{session_id}' not found"
            raise SessionNotFoundError(msg)
        return self.events.follow(session_id, offset, include_raw=include_raw)
