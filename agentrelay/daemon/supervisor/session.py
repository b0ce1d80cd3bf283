"""Per-session runtime: the prompt FIFO, its worker and the turn gate.

Prompts are accepted immediately and queued.  The worker hands one prompt
to the backend, then waits for the turn to go idle before handing over the
next, so a session never has two turns in flight.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentrelay.daemon.errors import AgentRelayError, SessionTerminatedError
from agentrelay.daemon.models.enums import AgentKind, ConcurrencyModel, EventSource, SessionEndReason
from agentrelay.daemon.models.events import StderrOutput
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.session import SessionInfo, SessionInit
from agentrelay.daemon.normalize.operations import EndSession, EndTurn, ReportError
from agentrelay.daemon.normalize.synthesizer import infer_end_reason

if TYPE_CHECKING:
    from agentrelay.daemon.agents.base import AgentAdapter
    from agentrelay.daemon.normalize.normalizer import Normalizer
    from agentrelay.daemon.supervisor.backends import SessionBackend
    from agentrelay.daemon.supervisor.installer import ResolvedBinary

logger = logging.getLogger(__name__)


@dataclass
class PendingPrompt:
    content: list[InputPart]
    waiter: asyncio.Future[None] | None = field(default=None, repr=False)

    def resolve(self) -> None:
        if self.waiter is not None and not self.waiter.done():
            self.waiter.set_result(None)

    def fail(self, exc: BaseException) -> None:
        if self.waiter is not None and not self.waiter.done():
            self.waiter.set_exception(exc)


class SessionHandle:
    """Everything the supervisor keeps for one live (or ended) session."""

    def __init__(
        self,
        agent: AgentKind,
        init: SessionInit,
        adapter: AgentAdapter,
        normalizer: Normalizer,
        binary: ResolvedBinary,
        *,
        on_ended: Callable[[SessionHandle], None],
    ) -> None:
        self.agent = agent
        self.init = init
        self.adapter = adapter
        self.normalizer = normalizer
        self.binary = binary
        self.backend: SessionBackend | None = None
        self.queue: asyncio.Queue[PendingPrompt] = asyncio.Queue()
        self.turn_idle = asyncio.Event()
        self.turn_idle.set()
        self.closed = False
        self._worker: asyncio.Task[None] | None = None
        self._current: PendingPrompt | None = None
        self._on_ended = on_ended
        self._ended_notified = False

        # Per-message agents are idle only once their process has exited.
        self.turn_ends_on_exit = adapter.capabilities.concurrency == ConcurrencyModel.PER_MESSAGE

    @property
    def session_id(self) -> str:
        return self.normalizer.state.session_id

    @property
    def ended(self) -> bool:
        return self.normalizer.state.ended

    def info(self) -> SessionInfo:
        state = self.normalizer.state
        return SessionInfo(
            session_id=state.session_id,
            native_session_id=state.native_session_id,
            agent=self.agent,
            created_at=state.created_at,
            ended=state.ended,
        )

    # -- Inbound frames --------------------------------------------------------

    async def dispatch(self, frame: str) -> None:
        """Feed one native frame through the normalizer."""
        ops = await self.normalizer.handle_native_event(frame)
        if self.ended:
            self.turn_idle.set()
            self._notify_ended()
            return
        if not self.turn_ends_on_exit and any(isinstance(op, EndTurn | EndSession) for op in ops):
            self.turn_idle.set()

    async def close_turn(self, status: str) -> None:
        """Close the open turn (if any) on behalf of an agent that just exited."""
        if self.normalizer.state.turn_open:
            await self.normalizer.apply([EndTurn(status=status)])
        self.turn_idle.set()

    async def process_exited(self, exit_code: int | None, stderr: StderrOutput | None) -> None:
        """The backing process died: end the session with the inferred reason."""
        turn_pending = self.normalizer.state.turn_open or not self.turn_idle.is_set()
        reason = infer_end_reason(exit_code, turn_pending=turn_pending)
        logger.info(
            "Session %s: %s process exited (code=%s, reason=%s)", self.session_id, self.agent, exit_code, reason
        )
        await self.normalizer.finish(
            reason,
            exit_code=exit_code,
            stderr=stderr,
            message=f"{self.agent} exited with code {exit_code}",
        )
        self.turn_idle.set()
        self._notify_ended()

    async def connection_lost(self, reason: str) -> None:
        """The shared server stopped relaying this session's events."""
        logger.warning("Session %s: lost contact with %s: %s", self.session_id, self.agent, reason)
        await self.normalizer.finish(SessionEndReason.ERROR, message=f"{self.agent} {reason}")
        self.turn_idle.set()
        self._notify_ended()

    def _notify_ended(self) -> None:
        if self._ended_notified or self.closed:
            return
        self._ended_notified = True
        self._on_ended(self)

    # -- Worker ----------------------------------------------------------------

    def start(self) -> None:
        self._worker = asyncio.create_task(self._run(), name=f"session-worker-{self.session_id}")

    async def _run(self) -> None:
        while True:
            prompt = await self.queue.get()
            self._current = prompt
            try:
                await self._deliver(prompt)
            finally:
                self._current = None
                self.queue.task_done()

    async def _deliver(self, prompt: PendingPrompt) -> None:
        if self.closed or self.ended:
            prompt.fail(SessionTerminatedError(f"Session '{self.session_id}' has ended"))
            return
        assert self.backend is not None
        self.turn_idle.clear()
        try:
            await self.backend.deliver(prompt.content)
        except AgentRelayError as exc:
            self.turn_idle.set()
            logger.warning("Session %s: prompt delivery failed: %s", self.session_id, exc)
            await self.normalizer.apply(
                [ReportError(message=str(exc), code="prompt_delivery_failed")],
                source=EventSource.DAEMON,
            )
            prompt.fail(exc)
            return
        prompt.resolve()
        await self.turn_idle.wait()

    async def stop_worker(self) -> None:
        """Cancel the worker and fail every prompt still in the queue."""
        if self._worker is not None:
            self._worker.cancel()
            current = self._current
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
            if current is not None:
                current.fail(SessionTerminatedError(f"Session '{self.session_id}' was terminated"))
        while not self.queue.empty():
            prompt = self.queue.get_nowait()
            prompt.fail(SessionTerminatedError(f"Session '{self.session_id}' was terminated"))
            self.queue.task_done()
