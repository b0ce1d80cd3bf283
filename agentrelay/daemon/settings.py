"""Service configuration loaded from AGENTRELAY_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from agentrelay.daemon.models.enums import AgentKind


class RelaySettings(BaseSettings):
    """Agent relay daemon settings.

    All fields are read from environment variables with the ``AGENTRELAY_``
    prefix.  For example, ``AGENTRELAY_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    Agent credentials (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) are **not**
    managed here -- the spawned agents read them from the inherited
    environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit one JSON object per log record instead of the colored text format."""

    # -- Server ----------------------------------------------------------------
    host: str = "127.0.0.1"
    port: int = 8700
    graceful_shutdown_timeout: int = 30
    """Seconds to wait for live sessions to finish their turn during shutdown.

    After this timeout, remaining sessions are terminated.
    """

    # -- Agent processes -------------------------------------------------------
    terminate_grace_seconds: float = 5.0
    """Grace window between SIGTERM and SIGKILL."""

    stderr_head_lines: int = 20
    stderr_tail_lines: int = 50

    server_startup_timeout: float = 30.0
    """Seconds a shared server (codex app-server, opencode serve) gets to become ready."""

    request_timeout: float = 30.0
    """Seconds to wait for an agent to acknowledge an RPC command (Pi, Codex)."""

    working_dir: str | None = None
    """Default working directory for spawned agents (the daemon's cwd when unset)."""

    # -- Agent binaries --------------------------------------------------------
    install_dir: str | None = None
    """Extra directory searched for agent binaries before ``PATH``."""

    claude_bin: str | None = None
    codex_bin: str | None = None
    opencode_bin: str | None = None
    amp_bin: str | None = None
    pi_bin: str | None = None

    # -- Helpers ---------------------------------------------------------------

    def binary_override(self, kind: AgentKind) -> str | None:
        """Return the explicitly configured binary for ``kind``, if any."""
        return getattr(self, f"{kind}_bin")


def get_settings() -> RelaySettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> RelaySettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return RelaySettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
