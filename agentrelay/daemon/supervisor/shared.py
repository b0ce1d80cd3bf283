"""Shared agent servers multiplexing many sessions over one process.

``CodexServer`` speaks JSON-RPC lines with ``codex app-server`` over stdio;
``OpenCodeServer`` drives ``opencode serve`` over HTTP and listens on its
``/event`` SSE stream.  Both route inbound frames to sessions by native
session id.  Frames for a session whose route is not registered yet (the
agent announcing a new thread before answering the request that created it)
are held in a bounded buffer and replayed when the route appears.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.metadata
import itertools
import json
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, Self

import httpx
from loguru import logger

from agentrelay.daemon.agents.codex import initialize_request, initialized_notification, thread_id_of
from agentrelay.daemon.agents.decoding import SSEDecoder
from agentrelay.daemon.agents.opencode import HttpRequest, OpenCodeAdapter, session_key
from agentrelay.daemon.errors import AgentCrashedError, AgentRelayError
from agentrelay.daemon.models.enums import AgentKind
from agentrelay.daemon.models.events import StderrOutput
from agentrelay.daemon.settings import RelaySettings
from agentrelay.daemon.supervisor.installer import ResolvedBinary
from agentrelay.daemon.supervisor.process import AgentProcess

#: Frames kept for sessions whose route is not registered yet.
ORPHAN_BUFFER_SIZE = 512

_LISTENING = re.compile(r"https?://[\w.\-]+(?::\d+)?")


def _client_version() -> str:
    try:
        return importlib.metadata.version("agentrelay")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


class SharedServer(Protocol):
    kind: ClassVar[AgentKind]
    build: str

    @property
    def alive(self) -> bool: ...

    async def stop(self) -> None: ...


@dataclass
class Route:
    """Where a session receives its frames and hears about server exit."""

    dispatch: Callable[[str], Awaitable[None]]
    on_exit: Callable[[int | None, StderrOutput | None], Awaitable[None]]
    on_lost: Callable[[str], Awaitable[None]]


class MultiplexedServer:
    """Routing table and lifecycle shared by both server flavours."""

    kind: ClassVar[AgentKind]

    def __init__(self, binary: ResolvedBinary, settings: RelaySettings) -> None:
        self.binary = binary
        self.build = binary.build
        self._settings = settings
        self._process: AgentProcess | None = None
        self._routes: dict[str, Route] = {}
        self._orphans: deque[tuple[str, str]] = deque(maxlen=ORPHAN_BUFFER_SIZE)
        self._deliver_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = False
        self._exited = False
        self._broken = False

    @classmethod
    async def launch(cls, binary: ResolvedBinary, settings: RelaySettings) -> Self:
        """Start a server; a failed or cancelled start leaves no process behind."""
        server = cls(binary, settings)
        try:
            await server.start()
        except BaseException:
            await asyncio.shield(server.stop())
            raise
        return server

    async def start(self) -> None:
        raise NotImplementedError

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.running and not (self._stopping or self._broken)

    # -- Routing ---------------------------------------------------------------

    async def route(self, native_session_id: str, route: Route) -> None:
        """Register a session and replay frames that arrived before it."""
        async with self._deliver_lock:
            self._routes[native_session_id] = route
            pending = [frame for key, frame in self._orphans if key == native_session_id]
            if pending:
                self._orphans = deque(
                    ((k, f) for k, f in self._orphans if k != native_session_id),
                    maxlen=ORPHAN_BUFFER_SIZE,
                )
                logger.debug("{} server: replaying {} early frames for {}", self.kind, len(pending), native_session_id)
            for frame in pending:
                await route.dispatch(frame)

    def unroute(self, native_session_id: str) -> None:
        self._routes.pop(native_session_id, None)

    async def _deliver(self, key: str | None, frame: str) -> None:
        if key is None:
            logger.debug("{} server: dropping frame without session id", self.kind)
            return
        async with self._deliver_lock:
            route = self._routes.get(key)
            if route is None:
                if len(self._orphans) == self._orphans.maxlen:
                    logger.warning("{} server: orphan buffer full; dropping oldest frame", self.kind)
                self._orphans.append((key, frame))
                return
            await route.dispatch(frame)

    # -- Lifecycle -------------------------------------------------------------

    def _spawn_task(self, coro: Awaitable[None]) -> None:
        self._tasks.append(asyncio.create_task(coro))  # type: ignore[arg-type]

    async def _process_exited(self) -> None:
        """Notify every routed session that the server is gone."""
        if self._exited or self._process is None:
            return
        self._exited = True
        code = await self._process.wait()
        stderr = self._process.stderr()
        self._fail_pending(code)
        if self._stopping:
            return
        logger.warning("{} server exited unexpectedly (code={}, sessions={})", self.kind, code, len(self._routes))
        for route in self._take_routes():
            await route.on_exit(code, stderr)

    async def _connection_lost(self, reason: str) -> None:
        """The server is running but can no longer reach its sessions.

        It stops taking sessions; the ones routed to it end with an error and
        the server is stopped once the last of them releases it.
        """
        if self._stopping or self._exited or self._process is None:
            return
        # A dying process closes its connections first; let the exit path report it.
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=1.0)
            return
        self._broken = True
        logger.error("{} server: {} (sessions={})", self.kind, reason, len(self._routes))
        for route in self._take_routes():
            await route.on_lost(reason)

    def _take_routes(self) -> list[Route]:
        routes = list(self._routes.values())
        self._routes.clear()
        return routes

    def _fail_pending(self, code: int | None) -> None:
        """Fail requests waiting on a response; overridden where requests exist."""

    async def stop(self) -> None:
        self._stopping = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._process is not None:
            await self._process.terminate(self._settings.terminate_grace_seconds)
        logger.info("{} server stopped", self.kind)


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------


class CodexServer(MultiplexedServer):
    """One ``codex app-server`` process and its JSON-RPC request table."""

    kind: ClassVar[AgentKind] = AgentKind.CODEX

    def __init__(self, binary: ResolvedBinary, settings: RelaySettings) -> None:
        super().__init__(binary, settings)
        self._ids = itertools.count(1)
        self._pending: dict[int | str, asyncio.Future[Any]] = {}

    async def start(self) -> None:
        self._process = await AgentProcess.spawn(
            [str(self.binary.path), "app-server"],
            cwd=self._settings.working_dir,
            head_lines=self._settings.stderr_head_lines,
            tail_lines=self._settings.stderr_tail_lines,
        )
        self._spawn_task(self._read_loop())
        try:
            await asyncio.wait_for(
                self.request(initialize_request(self.next_request_id(), _client_version())),
                timeout=self._settings.server_startup_timeout,
            )
        except (TimeoutError, AgentRelayError) as exc:
            msg = f"codex app-server failed to initialize: {exc}"
            raise AgentCrashedError(msg) from exc
        await self.send(initialized_notification())

    def next_request_id(self) -> int:
        return next(self._ids)

    async def send(self, payload: dict[str, Any]) -> None:
        if self._process is None:
            msg = "codex app-server is not running"
            raise AgentCrashedError(msg)
        await self._process.write_json(payload)

    async def request(self, payload: dict[str, Any]) -> Any:
        """Send a JSON-RPC request and wait for its result."""
        request_id = payload["id"]
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send(payload)
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._process is not None
        async for line in self._process.lines():
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("codex app-server: non-JSON stdout line: {}", line[:200])
                continue
            if isinstance(payload, dict) and "method" not in payload and "id" in payload:
                self._resolve(payload)
                continue
            await self._deliver(thread_id_of(payload), line)
        await self._process_exited()

    def _resolve(self, payload: dict[str, Any]) -> None:
        future = self._pending.get(payload["id"])
        if future is None or future.done():
            logger.debug("codex app-server: response for unknown request {}", payload["id"])
            return
        error = payload.get("error")
        if error is not None:
            message = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(AgentRelayError(f"codex: {message}"))
        else:
            future.set_result(payload.get("result"))

    def _fail_pending(self, code: int | None) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(AgentCrashedError(f"codex app-server exited (code={code})"))


# ---------------------------------------------------------------------------
# OpenCode
# ---------------------------------------------------------------------------


class OpenCodeServer(MultiplexedServer):
    """One ``opencode serve`` process, its HTTP client and its event stream."""

    kind: ClassVar[AgentKind] = AgentKind.OPENCODE

    def __init__(self, binary: ResolvedBinary, settings: RelaySettings) -> None:
        super().__init__(binary, settings)
        self.base_url: str | None = None
        self._client: httpx.AsyncClient | None = None
        self._connected = asyncio.Event()

    async def start(self) -> None:
        self._process = await AgentProcess.spawn(
            OpenCodeAdapter().command_args(str(self.binary.path)),
            cwd=self._settings.working_dir,
            head_lines=self._settings.stderr_head_lines,
            tail_lines=self._settings.stderr_tail_lines,
        )
        try:
            async with asyncio.timeout(self._settings.server_startup_timeout):
                self.base_url = await self._await_listening()
                self._client = httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(30.0))
                self._spawn_task(self._stdout_loop())
                self._spawn_task(self._event_loop())
                await self._connected.wait()
        except (TimeoutError, AgentRelayError) as exc:
            msg = f"opencode serve did not become ready: {exc}"
            raise AgentCrashedError(msg) from exc
        logger.info("opencode server listening on {}", self.base_url)

    async def _await_listening(self) -> str:
        assert self._process is not None
        async for line in self._process.lines():
            match = _LISTENING.search(line)
            if match:
                return match.group(0)
            logger.debug("opencode: {}", line)
        code = await self._process.wait()
        msg = f"exited with code {code} before listening"
        raise AgentCrashedError(msg)

    async def _stdout_loop(self) -> None:
        assert self._process is not None
        async for line in self._process.lines():
            logger.debug("opencode: {}", line)
        await self._process_exited()

    async def _event_loop(self) -> None:
        assert self._client is not None
        decoder = SSEDecoder()
        try:
            async with self._client.stream("GET", "/event", timeout=httpx.Timeout(30.0, read=None)) as response:
                response.raise_for_status()
                self._connected.set()
                async for line in response.aiter_lines():
                    frame = decoder.feed(line)
                    if frame is None:
                        continue
                    try:
                        payload = json.loads(frame.data)
                    except json.JSONDecodeError:
                        logger.warning("opencode: non-JSON event payload: {}", frame.data[:200])
                        continue
                    await self._deliver(session_key(payload), frame.data)
        except httpx.HTTPError as exc:
            await self._connection_lost(f"event stream failed: {exc}")
        else:
            await self._connection_lost("event stream closed")

    async def request(self, req: HttpRequest) -> Any:
        if self._client is None:
            msg = "opencode server is not running"
            raise AgentCrashedError(msg)
        try:
            response = await self._client.request(req.method, req.path, json=req.json, params=req.params)
        except httpx.HTTPError as exc:
            msg = f"opencode {req.method} {req.path} failed: {exc}"
            raise AgentCrashedError(msg) from exc
        if response.is_error:
            msg = f"opencode {req.method} {req.path} -> {response.status_code}: {response.text[:200]}"
            raise AgentRelayError(msg)
        if not response.content:
            return None
        return response.json()

    async def stop(self) -> None:
        await super().stop()
        if self._client is not None:
            await self._client.aclose()
