"""Agent binary resolution.

The supervisor asks an ``AgentInstaller`` for the executable of an agent
kind before any session state exists, so a cancelled or failed resolution
leaves nothing behind.  The default ``PathInstaller`` only *finds* binaries
(settings override, ``install_dir``, then ``PATH``); an installer that
downloads missing agents can be plugged in through the same protocol.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anyio.to_thread

from agentrelay.daemon.errors import AgentUnavailableError
from agentrelay.daemon.models.enums import AgentKind
from agentrelay.daemon.settings import RelaySettings

# Executable name per agent kind.
BINARY_NAMES: dict[AgentKind, str] = {
    AgentKind.CLAUDE: "claude",
    AgentKind.CODEX: "codex",
    AgentKind.OPENCODE: "opencode",
    AgentKind.AMP: "amp",
    AgentKind.PI: "pi",
}


@dataclass(frozen=True)
class ResolvedBinary:
    """An executable plus a build fingerprint.

    ``build`` changes whenever the file on disk is replaced, which is how a
    shared server notices that a newer build has been installed.
    """

    path: Path
    build: str


class AgentInstaller(Protocol):
    async def resolve(self, kind: AgentKind) -> ResolvedBinary:
        """Return the agent executable.  Raises ``AgentUnavailableError``."""
        ...


class PathInstaller:
    """Resolve binaries from settings overrides, ``install_dir`` and ``PATH``."""

    def __init__(self, settings: RelaySettings) -> None:
        self._settings = settings

    async def resolve(self, kind: AgentKind) -> ResolvedBinary:
        return await anyio.to_thread.run_sync(self._resolve_sync, kind)

    def _resolve_sync(self, kind: AgentKind) -> ResolvedBinary:
        override = self._settings.binary_override(kind)
        if override:
            path = Path(override).expanduser()
            if not _is_executable(path):
                msg = f"Configured {kind} binary {override!r} is not an executable file"
                raise AgentUnavailableError(msg)
            return _fingerprint(path)

        name = BINARY_NAMES[kind]
        if self._settings.install_dir:
            candidate = Path(self._settings.install_dir).expanduser() / name
            if _is_executable(candidate):
                return _fingerprint(candidate)

        found = shutil.which(name)
        if found is None:
            msg = f"Agent '{kind}' is not installed ({name!r} not found on PATH)"
            raise AgentUnavailableError(msg)
        return _fingerprint(Path(found))


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _fingerprint(path: Path) -> ResolvedBinary:
    resolved = path.resolve()
    stat = resolved.stat()
    return ResolvedBinary(path=path, build=f"{resolved}:{stat.st_size}:{stat.st_mtime_ns}")
