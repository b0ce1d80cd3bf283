"""Session-level models: init parameters, identity, and agent capabilities."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from agentrelay.daemon.models.enums import AgentKind, ConcurrencyModel


class AgentCapabilities(BaseModel):
    """Capability table consulted by the supervisor and the synthesizer."""

    concurrency: ConcurrencyModel
    native_session_start: bool = False
    native_session_end: bool = False
    streaming_deltas: bool = False
    abort: bool = False
    questions: bool = False
    permissions: bool = False
    images: bool = False


class SessionInit(BaseModel):
    """Parameters for opening a session.  Agents ignore what they cannot use."""

    model: str | None = None
    cwd: str | None = None
    permission_mode: str | None = Field(
        default=None,
        description="Agent-specific approval mode; 'bypass' skips all prompts.",
    )
    agent_mode: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class SessionInfo(BaseModel):
    session_id: str
    native_session_id: str | None = None
    agent: AgentKind
    created_at: datetime | None = None
    ended: bool = False
