"""Universal event models.

Defines the event envelope delivered to consumers and the typed payload for
each event type.  Every event is valid against this schema regardless of the
agent that produced it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from agentrelay.daemon.models.enums import (
    EventSource,
    EventType,
    PermissionStatus,
    QuestionStatus,
    SessionEndReason,
)
from agentrelay.daemon.models.items import UniversalItem

# -- Payloads ----------------------------------------------------------------


class SessionStartedData(BaseModel):
    metadata: dict[str, Any] | None = None


class StderrOutput(BaseModel):
    """Captured stderr of a failed agent process.

    ``head`` holds the first lines and ``tail`` the last lines; ``tail`` is
    only set when the output was too long to keep in full.
    """

    head: str
    tail: str | None = None
    truncated: bool = False
    total_lines: int | None = None


class SessionEndedData(BaseModel):
    reason: SessionEndReason
    terminated_by: EventSource
    message: str | None = None
    exit_code: int | None = None
    stderr: StderrOutput | None = None


class TurnEventData(BaseModel):
    turn_id: str | None = None
    status: str | None = None


class ItemEventData(BaseModel):
    item: UniversalItem


class ItemDeltaData(BaseModel):
    item_id: str
    native_item_id: str | None = None
    delta: str
    resync: bool = False
    """True when ``delta`` is a full snapshot rather than an increment."""


class ErrorData(BaseModel):
    message: str
    code: str | None = None
    details: Any = None


class PermissionEventData(BaseModel):
    permission_id: str
    action: str
    status: PermissionStatus
    metadata: dict[str, Any] | None = None


class QuestionEventData(BaseModel):
    question_id: str
    prompt: str
    options: list[str] = Field(default_factory=list)
    status: QuestionStatus
    response: list[list[str]] | None = None


class AgentUnparsedData(BaseModel):
    error: str
    location: str
    raw_hash: str


EventData = (
    ItemEventData
    | ItemDeltaData
    | SessionEndedData
    | PermissionEventData
    | QuestionEventData
    | AgentUnparsedData
    | ErrorData
    | TurnEventData
    | SessionStartedData
)


# -- Envelope ----------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


class UniversalEvent(BaseModel):
    """Wire-format event envelope.

    ``sequence`` is unique per session, starts at 1 and increases by one for
    every event.  ``raw`` carries the native payload and is stripped unless
    the consumer opted in.
    """

    event_id: str
    sequence: int
    time: datetime = Field(default_factory=utc_now)
    session_id: str
    native_session_id: str | None = None
    source: EventSource
    synthetic: bool = False
    type: EventType
    data: EventData
    raw: Any = None

    def without_raw(self) -> UniversalEvent:
        if self.raw is None:
            return self
        return self.model_copy(update={"raw": None})
