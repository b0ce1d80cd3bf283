"""In-process registry of live sessions and the agent processes behind them.

Tracks which sessions are alive, the reference-counted shared servers
(``codex app-server``, ``opencode serve``) and the processes owned by a
single session (Pi's dedicated RPC process, the current per-message CLI
run).  Ephemeral -- empty on process restart.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from loguru import logger

from agentrelay.daemon.errors import ShuttingDownError

if TYPE_CHECKING:
    from agentrelay.daemon.models.enums import AgentKind
    from agentrelay.daemon.supervisor.process import AgentProcess
    from agentrelay.daemon.supervisor.shared import SharedServer

S = TypeVar("S", bound="SharedServer")


class ProcessRegistry:
    """Registry of live sessions, shared servers and session-owned processes.

    The registry also provides a drain mechanism for graceful shutdown:
    ``wait_until_drained`` blocks until all sessions have been unregistered.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, AgentKind] = {}
        self._servers: dict[AgentKind, SharedServer] = {}
        self._refs: dict[SharedServer, int] = {}
        self._retired: list[SharedServer] = []
        self._processes: dict[str, AgentProcess] = {}
        self._locks: dict[AgentKind, asyncio.Lock] = {}
        self._stopping: set[asyncio.Task[None]] = set()
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no sessions).
        self._shutting_down = False

    # -- Sessions --------------------------------------------------------------

    def register_session(self, session_id: str, agent: AgentKind) -> None:
        """Register a session.  Raises ``ShuttingDownError`` if shutting down."""
        if self._shutting_down:
            raise ShuttingDownError
        logger.debug("Registry: register session {} (agent={})", session_id, agent)
        self._sessions[session_id] = agent
        self._drain_event.clear()

    def unregister_session(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Registry: unregister session {}", session_id)
        if not self._sessions:
            self._drain_event.set()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # -- Shared servers --------------------------------------------------------

    def _lock(self, kind: AgentKind) -> asyncio.Lock:
        return self._locks.setdefault(kind, asyncio.Lock())

    async def acquire_server(self, kind: AgentKind, build: str, factory: Callable[[], Awaitable[S]]) -> S:
        """Return the live server for ``kind``, starting one if needed.

        A running server of an older ``build`` is retired: it accepts no new
        sessions and is stopped once its last session releases it.
        """
        async with self._lock(kind):
            if self._shutting_down:
                raise ShuttingDownError
            server = self._servers.get(kind)
            if server is not None and (server.build != build or not server.alive):
                self._retire(kind, server)
                server = None
            if server is None:
                server = await factory()
                self._servers[kind] = server
                self._refs[server] = 0
                logger.info("Registry: started shared {} server (build={})", kind, build)
            self._refs[server] += 1
            return server  # type: ignore[return-value]

    async def release_server(self, kind: AgentKind, server: SharedServer) -> None:
        """Drop one reference; stop the server when nothing uses it."""
        async with self._lock(kind):
            refs = self._refs.get(server, 0) - 1
            if refs > 0:
                self._refs[server] = refs
                return
            self._refs.pop(server, None)
            if self._servers.get(kind) is server:
                del self._servers[kind]
            if server in self._retired:
                self._retired.remove(server)
            logger.info("Registry: stopping idle shared {} server", kind)
        await server.stop()

    def _retire(self, kind: AgentKind, server: SharedServer) -> None:
        del self._servers[kind]
        if self._refs.get(server, 0) == 0:
            self._refs.pop(server, None)
            task = asyncio.get_running_loop().create_task(server.stop())
            self._stopping.add(task)
            task.add_done_callback(self._stopping.discard)
            return
        logger.info("Registry: retiring shared {} server (build={}); newer build resolved", kind, server.build)
        self._retired.append(server)

    def servers(self) -> list[SharedServer]:
        return [*self._servers.values(), *self._retired]

    # -- Session-owned processes -----------------------------------------------

    def attach_process(self, session_id: str, process: AgentProcess) -> None:
        self._processes[session_id] = process

    def detach_process(self, session_id: str, process: AgentProcess | None = None) -> None:
        current = self._processes.get(session_id)
        if current is not None and (process is None or current is process):
            del self._processes[session_id]

    def process_for(self, session_id: str) -> AgentProcess | None:
        return self._processes.get(session_id)

    @property
    def process_count(self) -> int:
        return len(self._processes)

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New registrations are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new sessions")
        if not self._sessions:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all sessions have been unregistered (drained).

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with sessions still active.
        """
        if not self._sessions:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} sessions still active",
                timeout,
                len(self._sessions),
            )
            return False
        else:
            return True

    async def stop_all(self, grace: float) -> None:
        """Kill every remaining process and server.  Last step of shutdown."""
        processes = list(self._processes.values())
        self._processes.clear()
        for process in processes:
            await process.terminate(grace)
        servers = self.servers()
        self._servers.clear()
        self._retired.clear()
        self._refs.clear()
        for server in servers:
            await server.stop()
        if processes or servers:
            logger.info("Registry: stopped {} processes and {} shared servers", len(processes), len(servers))
