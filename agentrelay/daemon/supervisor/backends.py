"""Session backends -- how prompts and control commands reach an agent.

One backend per concurrency model:

- ``PerMessageBackend`` spawns the agent CLI once per prompt (Claude, Amp).
- ``DedicatedBackend`` keeps one JSON-lines RPC process per session (Pi).
- ``CodexBackend`` / ``OpenCodeBackend`` multiplex sessions over a shared
  server acquired from the ``ProcessRegistry``.

Backends never emit events directly; native frames go through
``SessionHandle.dispatch`` and daemon-side resolutions through the
session's normalizer.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from agentrelay.daemon.errors import (
    AgentCrashedError,
    AgentRelayError,
    UnknownRequestError,
    UnsupportedOperationError,
)
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    PermissionReply,
    PermissionStatus,
    QuestionStatus,
)
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.normalize.operations import BindNativeSession, ResolvePermission, ResolveQuestion
from agentrelay.daemon.supervisor.process import AgentProcess
from agentrelay.daemon.supervisor.shared import CodexServer, OpenCodeServer, Route

if TYPE_CHECKING:
    from agentrelay.daemon.agents.codex import CodexAdapter
    from agentrelay.daemon.agents.opencode import OpenCodeAdapter
    from agentrelay.daemon.agents.pi import PiAdapter
    from agentrelay.daemon.registry import ProcessRegistry
    from agentrelay.daemon.settings import RelaySettings
    from agentrelay.daemon.supervisor.session import SessionHandle

logger = logging.getLogger(__name__)


def _permission_status(reply: PermissionReply) -> PermissionStatus:
    return PermissionStatus.DENIED if reply == PermissionReply.REJECT else PermissionStatus.APPROVED


class SessionBackend:
    """Base backend.  Operations an agent cannot perform raise ``UnsupportedOperationError``."""

    def __init__(self, handle: SessionHandle, settings: RelaySettings, registry: ProcessRegistry) -> None:
        self.handle = handle
        self.settings = settings
        self.registry = registry

    @property
    def cwd(self) -> str | None:
        return self.handle.init.cwd or self.settings.working_dir

    async def spawn(self, args: list[str]) -> AgentProcess:
        process = await AgentProcess.spawn(
            args,
            cwd=self.cwd,
            env=self.handle.init.env,
            head_lines=self.settings.stderr_head_lines,
            tail_lines=self.settings.stderr_tail_lines,
        )
        self.registry.attach_process(self.handle.session_id, process)
        return process

    async def open(self) -> None:
        """Prepare the session.  Raises ``AgentCrashedError`` if the agent refuses it."""

    async def deliver(self, content: list[InputPart]) -> None:
        raise NotImplementedError

    async def abort(self) -> bool:
        return False

    async def reply_question(self, question_id: str, answers: list[list[str]]) -> None:
        raise UnsupportedOperationError(f"{self.handle.agent} does not ask questions")

    async def reject_question(self, question_id: str) -> None:
        raise UnsupportedOperationError(f"{self.handle.agent} does not ask questions")

    async def reply_permission(self, permission_id: str, reply: PermissionReply) -> None:
        raise UnsupportedOperationError(f"{self.handle.agent} does not request permissions")

    async def close(self) -> None:
        """Release everything the session holds.  Must be idempotent."""


# ---------------------------------------------------------------------------
# Per-message (Claude, Amp)
# ---------------------------------------------------------------------------


class PerMessageBackend(SessionBackend):
    """One CLI process per prompt; the turn ends when the process exits."""

    def __init__(self, handle: SessionHandle, settings: RelaySettings, registry: ProcessRegistry) -> None:
        super().__init__(handle, settings, registry)
        self._process: AgentProcess | None = None
        self._pump: asyncio.Task[None] | None = None
        self._aborted = False
        self._escalation: asyncio.Task[None] | None = None

    async def deliver(self, content: list[InputPart]) -> None:
        handle = self.handle
        args = handle.adapter.command_args(  # type: ignore[call-arg]
            str(handle.binary.path),
            content,
            handle.init,
            handle.normalizer.state.native_session_id,
        )
        process = await self.spawn(args)
        process.close_stdin()
        self._process = process
        self._aborted = False
        self._pump = asyncio.create_task(self._pump_output(process))

    async def _pump_output(self, process: AgentProcess) -> None:
        handle = self.handle
        async for line in process.lines():
            await handle.dispatch(line)
        code = await process.wait()
        self.registry.detach_process(handle.session_id, process)
        if self._process is process:
            self._process = None
        if handle.closed or handle.ended:
            return
        if code == 0 or self._aborted:
            await handle.close_turn("interrupted" if self._aborted else "completed")
        else:
            await handle.process_exited(code, process.stderr())

    async def abort(self) -> bool:
        process = self._process
        if process is None or not process.running:
            return False
        self._aborted = True
        process.interrupt()
        self._escalation = asyncio.create_task(self._escalate(process))
        return True

    async def _escalate(self, process: AgentProcess) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.terminate_grace_seconds)
        except TimeoutError:
            logger.warning("Session %s: agent ignored SIGINT; terminating", self.handle.session_id)
            await process.terminate(self.settings.terminate_grace_seconds)

    async def close(self) -> None:
        if self._process is not None:
            await self._process.terminate(self.settings.terminate_grace_seconds)
        for task in (self._pump, self._escalation):
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._pump = self._escalation = None


# ---------------------------------------------------------------------------
# Dedicated RPC process (Pi)
# ---------------------------------------------------------------------------


class DedicatedBackend(SessionBackend):
    """A long-lived JSON-lines RPC process owned by a single session."""

    def __init__(self, handle: SessionHandle, settings: RelaySettings, registry: ProcessRegistry) -> None:
        super().__init__(handle, settings, registry)
        self._process: AgentProcess | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._opened = False

    @property
    def adapter(self) -> PiAdapter:
        return self.handle.adapter  # type: ignore[return-value]

    async def open(self) -> None:
        self._process = await self.spawn(self.adapter.command_args(str(self.handle.binary.path), self.handle.init))
        self._reader = asyncio.create_task(self._read_loop(self._process))
        try:
            await self._command(self.adapter.encode_open)
        except AgentRelayError as exc:
            await self.close()
            msg = f"{self.handle.agent} did not accept the session: {exc}"
            raise AgentCrashedError(msg) from exc
        self._opened = True

    async def _read_loop(self, process: AgentProcess) -> None:
        handle = self.handle
        async for line in process.lines():
            response = _response_frame(line)
            await handle.dispatch(line)
            if response is not None:
                future = self._pending.get(str(response["id"]))
                if future is not None and not future.done():
                    future.set_result(response)
        code = await process.wait()
        self.registry.detach_process(handle.session_id, process)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(AgentCrashedError(f"{handle.agent} exited with code {code}"))
        if handle.closed or not self._opened:
            return
        await handle.process_exited(code, process.stderr())

    async def _command(self, build: Callable[[str], dict[str, Any]]) -> dict[str, Any]:
        """Send one command and wait for its response."""
        if self._process is None:
            msg = f"{self.handle.agent} is not running"
            raise AgentCrashedError(msg)
        request_id = f"req_{next(self._ids)}"
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._process.write_json(build(request_id))
            response = await asyncio.wait_for(future, timeout=self.settings.request_timeout)
        except TimeoutError:
            msg = f"{self.handle.agent} did not answer request {request_id}"
            raise AgentRelayError(msg) from None
        finally:
            self._pending.pop(request_id, None)
        if response.get("success") is False:
            msg = str(response.get("error") or f"{response.get('command')} failed")
            raise AgentRelayError(msg)
        return response

    async def deliver(self, content: list[InputPart]) -> None:
        await self._command(lambda request_id: self.adapter.encode_prompt(content, request_id))

    async def abort(self) -> bool:
        if self._process is None or not self._process.running or self.handle.turn_idle.is_set():
            return False
        await self._command(self.adapter.encode_abort)
        return True

    async def reply_question(self, question_id: str, answers: list[list[str]]) -> None:
        await self._answer(question_id, answers)

    async def reject_question(self, question_id: str) -> None:
        await self._answer(question_id, None)

    async def _answer(self, question_id: str, answers: list[list[str]] | None) -> None:
        if self._process is None:
            msg = f"{self.handle.agent} is not running"
            raise AgentCrashedError(msg)
        await self._process.write_json(self.adapter.encode_question_reply(question_id, answers))
        status = QuestionStatus.REJECTED if answers is None else QuestionStatus.ANSWERED
        await self.handle.normalizer.apply([ResolveQuestion(question_id, status, answers)])

    async def close(self) -> None:
        if self._process is not None:
            await self._process.terminate(self.settings.terminate_grace_seconds)
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None


def _response_frame(line: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if isinstance(payload, dict) and payload.get("type") == "response" and payload.get("id") is not None:
        return payload
    return None


# ---------------------------------------------------------------------------
# Shared servers (Codex, OpenCode)
# ---------------------------------------------------------------------------


class _SharedBackend(SessionBackend):
    server: CodexServer | OpenCodeServer | None

    def __init__(self, handle: SessionHandle, settings: RelaySettings, registry: ProcessRegistry) -> None:
        super().__init__(handle, settings, registry)
        self.server = None
        self.native_session_id: str | None = None

    async def _attach(self, native_session_id: str) -> None:
        assert self.server is not None
        self.native_session_id = native_session_id
        await self.handle.normalizer.apply([BindNativeSession(native_session_id)])
        route = Route(self.handle.dispatch, self.handle.process_exited, self.handle.connection_lost)
        await self.server.route(native_session_id, route)

    async def _stop_turn(self) -> None:
        """Best-effort interrupt of a running turn before the session goes away."""

    async def close(self) -> None:
        server, self.server = self.server, None
        if server is None:
            return
        if self.native_session_id is not None:
            if server.alive and not self.handle.turn_idle.is_set():
                try:
                    await self._stop_turn()
                except AgentRelayError as exc:
                    logger.warning("Session %s: could not stop running turn: %s", self.handle.session_id, exc)
            server.unroute(self.native_session_id)
        await self.registry.release_server(server.kind, server)


class CodexBackend(_SharedBackend):
    server: CodexServer | None

    @property
    def adapter(self) -> CodexAdapter:
        return self.handle.adapter  # type: ignore[return-value]

    async def open(self) -> None:
        binary = self.handle.binary
        self.server = await self.registry.acquire_server(
            AgentKind.CODEX,
            binary.build,
            lambda: CodexServer.launch(binary, self.settings),
        )
        server = self.server
        try:
            result = await self._request(self.adapter.thread_start_request(server.next_request_id(), self.handle.init))
            thread_id = result["thread"]["id"]
        except (AgentRelayError, KeyError, TypeError) as exc:
            await self.close()
            msg = f"codex did not start a thread: {exc}"
            raise AgentCrashedError(msg) from exc
        await self._attach(thread_id)

    async def _request(self, payload: dict[str, Any]) -> Any:
        assert self.server is not None
        try:
            return await asyncio.wait_for(self.server.request(payload), timeout=self.settings.request_timeout)
        except TimeoutError:
            msg = f"codex did not answer {payload['method']}"
            raise AgentRelayError(msg) from None

    async def deliver(self, content: list[InputPart]) -> None:
        if self.server is None or self.native_session_id is None:
            msg = "codex session is not attached"
            raise AgentCrashedError(msg)
        request = self.adapter.turn_start_request(self.server.next_request_id(), self.native_session_id, content)
        await self._request(request)

    async def abort(self) -> bool:
        if self.server is None or self.native_session_id is None:
            return False
        request = self.adapter.interrupt_request(self.server.next_request_id(), self.native_session_id)
        if request is None:
            return False
        await self._request(request)
        return True

    async def _stop_turn(self) -> None:
        await self.abort()

    async def reply_permission(self, permission_id: str, reply: PermissionReply) -> None:
        if self.server is None:
            msg = "codex session is not attached"
            raise AgentCrashedError(msg)
        try:
            response = self.adapter.permission_response(permission_id, reply)
        except LookupError:
            msg = f"No pending permission request '{permission_id}'"
            raise UnknownRequestError(msg) from None
        await self.server.send(response)
        await self.handle.normalizer.apply([ResolvePermission(permission_id, _permission_status(reply))])


class OpenCodeBackend(_SharedBackend):
    server: OpenCodeServer | None

    @property
    def adapter(self) -> OpenCodeAdapter:
        return self.handle.adapter  # type: ignore[return-value]

    async def open(self) -> None:
        binary = self.handle.binary
        self.server = await self.registry.acquire_server(
            AgentKind.OPENCODE,
            binary.build,
            lambda: OpenCodeServer.launch(binary, self.settings),
        )
        try:
            info = await self.server.request(self.adapter.create_session_request(self.handle.init))
            native_id = info["id"]
        except (AgentRelayError, KeyError, TypeError) as exc:
            await self.close()
            msg = f"opencode did not create a session: {exc}"
            raise AgentCrashedError(msg) from exc
        await self._attach(native_id)

    def _attached(self) -> tuple[OpenCodeServer, str]:
        if self.server is None or self.native_session_id is None:
            msg = "opencode session is not attached"
            raise AgentCrashedError(msg)
        return self.server, self.native_session_id

    async def deliver(self, content: list[InputPart]) -> None:
        server, native_id = self._attached()
        await server.request(self.adapter.prompt_request(native_id, content, self.handle.init))

    async def abort(self) -> bool:
        if self.handle.turn_idle.is_set():
            return False
        server, native_id = self._attached()
        await server.request(self.adapter.abort_request(native_id))
        return True

    async def _stop_turn(self) -> None:
        await self.abort()

    async def reply_question(self, question_id: str, answers: list[list[str]]) -> None:
        server, _ = self._attached()
        await server.request(self.adapter.question_reply_request(question_id, answers))
        await self.handle.normalizer.apply([ResolveQuestion(question_id, QuestionStatus.ANSWERED, answers)])

    async def reject_question(self, question_id: str) -> None:
        server, _ = self._attached()
        await server.request(self.adapter.question_reject_request(question_id))
        await self.handle.normalizer.apply([ResolveQuestion(question_id, QuestionStatus.REJECTED)])

    async def reply_permission(self, permission_id: str, reply: PermissionReply) -> None:
        server, _ = self._attached()
        await server.request(self.adapter.permission_request(permission_id, reply))
        await self.handle.normalizer.apply([ResolvePermission(permission_id, _permission_status(reply))])


BACKENDS: dict[ConcurrencyModel | AgentKind, type[SessionBackend]] = {
    ConcurrencyModel.PER_MESSAGE: PerMessageBackend,
    ConcurrencyModel.DEDICATED: DedicatedBackend,
    AgentKind.CODEX: CodexBackend,
    AgentKind.OPENCODE: OpenCodeBackend,
}


def backend_for(handle: SessionHandle, settings: RelaySettings, registry: ProcessRegistry) -> SessionBackend:
    """Pick the backend class for a session's agent."""
    concurrency = handle.adapter.capabilities.concurrency
    key: ConcurrencyModel | AgentKind = handle.agent if concurrency == ConcurrencyModel.SHARED_SERVER else concurrency
    return BACKENDS[key](handle, settings, registry)
