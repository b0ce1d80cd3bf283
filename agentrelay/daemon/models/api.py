"""API request / response schemas for the HTTP boundary.

These thin schemas sit between HTTP and the supervisor.  Domain types
(``SessionInit``, ``InputPart``, ``AgentCapabilities``) are reused for
validation rather than redeclared.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from agentrelay.daemon.models.enums import AgentKind, PermissionReply
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.session import AgentCapabilities, SessionInit

# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionCreate(BaseModel):
    """Input for opening a session with an agent."""

    agent: AgentKind
    init: SessionInit = Field(default_factory=SessionInit)


class MessageSend(BaseModel):
    """A prompt for an existing session."""

    content: list[InputPart] = Field(min_length=1)
    wait: bool = Field(default=False, description="Block until the prompt has been handed to the agent.")


class PromptAck(BaseModel):
    session_id: str
    queued: int = Field(description="Prompts waiting in the session queue, including this one.")
    delivered: bool = False


class AbortResponse(BaseModel):
    session_id: str
    aborted: bool


# ---------------------------------------------------------------------------
# Human-in-the-loop
# ---------------------------------------------------------------------------


class QuestionReply(BaseModel):
    answers: list[list[str]] = Field(description="One list of selected answers per question.")


class PermissionReplyBody(BaseModel):
    reply: PermissionReply


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentDescriptor(BaseModel):
    kind: AgentKind
    capabilities: AgentCapabilities
