"""Universal operations produced by protocol adapters.

An adapter turns one native event into zero or more of these; the normalizer
applies them against the session's state, which allocates sequence numbers,
enforces item lifecycles and fills capability gaps.  Items are addressed by
their *native* id; the tracker owns the mapping to daemon item ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentrelay.daemon.models.enums import (
    ItemKind,
    ItemRole,
    ItemStatus,
    PermissionStatus,
    QuestionStatus,
    SessionEndReason,
)
from agentrelay.daemon.models.items import ContentPart

# -- Session / turn ----------------------------------------------------------


@dataclass(frozen=True)
class StartSession:
    native_session_id: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class EndSession:
    reason: SessionEndReason = SessionEndReason.COMPLETED
    message: str | None = None


@dataclass(frozen=True)
class BindNativeSession:
    """Record the agent-assigned session id without emitting an event."""

    native_session_id: str


@dataclass(frozen=True)
class StartTurn:
    turn_id: str | None = None


@dataclass(frozen=True)
class EndTurn:
    turn_id: str | None = None
    status: str | None = None


# -- Items -------------------------------------------------------------------


@dataclass(frozen=True)
class StartItem:
    native_item_id: str
    kind: ItemKind
    role: ItemRole | None = None
    parent_native_id: str | None = None
    content: list[ContentPart] = field(default_factory=list)


@dataclass(frozen=True)
class AppendDelta:
    """Append text to an item.  ``kind``/``role`` shape a stub start if needed."""

    native_item_id: str
    delta: str
    resync: bool = False
    kind: ItemKind = ItemKind.MESSAGE
    role: ItemRole | None = ItemRole.ASSISTANT
    parent_native_id: str | None = None


@dataclass(frozen=True)
class CompleteItem:
    """Close an item.  ``content=None`` keeps whatever the item already holds."""

    native_item_id: str
    kind: ItemKind
    role: ItemRole | None = None
    status: ItemStatus = ItemStatus.COMPLETED
    content: list[ContentPart] | None = None
    parent_native_id: str | None = None


# -- Errors / HITL -----------------------------------------------------------


@dataclass(frozen=True)
class ReportError:
    message: str
    code: str | None = None
    details: Any = None


@dataclass(frozen=True)
class RequestPermission:
    permission_id: str
    action: str
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class ResolvePermission:
    permission_id: str
    status: PermissionStatus


@dataclass(frozen=True)
class RequestQuestion:
    question_id: str
    prompt: str
    options: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ResolveQuestion:
    question_id: str
    status: QuestionStatus
    response: list[list[str]] | None = None


Operation = (
    StartSession
    | EndSession
    | BindNativeSession
    | StartTurn
    | EndTurn
    | StartItem
    | AppendDelta
    | CompleteItem
    | ReportError
    | RequestPermission
    | ResolvePermission
    | RequestQuestion
    | ResolveQuestion
)
