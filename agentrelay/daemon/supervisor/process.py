"""Agent subprocess wrapper.

``AgentProcess`` owns one spawned agent binary: its stdin (JSON lines out),
its stdout (JSON lines or log lines in) and a bounded capture of its stderr
for ``session.ended`` diagnostics.  Termination follows the usual ladder:
SIGTERM, a grace window, then SIGKILL.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
from collections import deque
from collections.abc import AsyncIterator, Mapping
from typing import Any

from agentrelay.daemon.errors import AgentCrashedError, AgentUnavailableError
from agentrelay.daemon.models.events import StderrOutput
from agentrelay.daemon.normalize.synthesizer import stderr_output

logger = logging.getLogger(__name__)

#: Maximum bytes per stdout line (16 MB); tool outputs can be large.
MAX_LINE_BYTES = 16 * 1024 * 1024


class StderrCapture:
    """Keeps the first ``head_lines`` and the last ``tail_lines`` of a stream."""

    def __init__(self, head_lines: int = 20, tail_lines: int = 50) -> None:
        self._head_limit = head_lines
        self.head: list[str] = []
        self.tail: deque[str] = deque(maxlen=tail_lines)
        self.total = 0

    def feed(self, line: str) -> None:
        self.total += 1
        if len(self.head) < self._head_limit:
            self.head.append(line)
        else:
            self.tail.append(line)

    def output(self) -> StderrOutput:
        return stderr_output(self.head, list(self.tail), self.total)

    async def consume(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                self.feed("<stderr line exceeded buffer limit>")
                continue
            if not raw:
                return
            self.feed(raw.decode("utf-8", errors="replace").rstrip("\r\n"))


class AgentProcess:
    """A running agent binary with piped stdio."""

    def __init__(self, proc: asyncio.subprocess.Process, args: list[str], capture: StderrCapture) -> None:
        self._proc = proc
        self.args = args
        self.capture = capture
        self._stderr_task: asyncio.Task[None] | None = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(capture.consume(proc.stderr))

    @classmethod
    async def spawn(
        cls,
        args: list[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        head_lines: int = 20,
        tail_lines: int = 50,
    ) -> AgentProcess:
        """Start ``args`` with piped stdio.

        Raises ``AgentUnavailableError`` when the binary cannot be executed.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, **(env or {})},
                limit=MAX_LINE_BYTES,
            )
        except (FileNotFoundError, PermissionError) as exc:
            msg = f"Cannot execute {args[0]!r}: {exc}"
            raise AgentUnavailableError(msg) from exc
        logger.debug("Spawned %s (pid=%s)", args[0], proc.pid)
        return cls(proc, args, StderrCapture(head_lines, tail_lines))

    # -- State -----------------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def running(self) -> bool:
        return self._proc.returncode is None

    # -- I/O -------------------------------------------------------------------

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines (without the newline) until EOF."""
        stdout = self._proc.stdout
        if stdout is None:
            return
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                logger.warning("%s: stdout line exceeded buffer limit, skipping", self.args[0])
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line.strip():
                yield line

    async def write_json(self, payload: Any) -> None:
        """Write one JSON line to stdin."""
        stdin = self._proc.stdin
        if stdin is None or not self.running:
            msg = f"{self.args[0]} is not running"
            raise AgentCrashedError(msg)
        try:
            stdin.write((json.dumps(payload, ensure_ascii=False) + "\n").encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            msg = f"{self.args[0]} closed its stdin"
            raise AgentCrashedError(msg) from exc

    def close_stdin(self) -> None:
        """Signal EOF to agents that read their prompt from argv."""
        if self._proc.stdin is not None and not self._proc.stdin.is_closing():
            self._proc.stdin.close()

    def stderr(self) -> StderrOutput:
        return self.capture.output()

    # -- Lifecycle -------------------------------------------------------------

    async def wait(self) -> int:
        """Wait for exit and for stderr to be fully captured."""
        code = await self._proc.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        return code

    def interrupt(self) -> None:
        """Send SIGINT (the CLI agents treat it as "stop this turn")."""
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self._proc.send_signal(signal.SIGINT)

    async def terminate(self, grace: float = 5.0) -> int:
        """SIGTERM, wait ``grace`` seconds, then SIGKILL."""
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except TimeoutError:
                logger.warning("%s (pid=%s) ignored SIGTERM for %ss; killing", self.args[0], self.pid, grace)
                with contextlib.suppress(ProcessLookupError):
                    self._proc.kill()
        return await self.wait()
