"""Shared enumerations used across the daemon."""

from __future__ import annotations

from enum import StrEnum

# -- Agents ------------------------------------------------------------------


class AgentKind(StrEnum):
    """The closed set of agent backends the daemon can front."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    AMP = "amp"
    PI = "pi"


class ConcurrencyModel(StrEnum):
    """How backing processes map onto sessions."""

    PER_MESSAGE = "per_message"
    SHARED_SERVER = "shared_server"
    DEDICATED = "dedicated"


# -- Events ------------------------------------------------------------------


class EventType(StrEnum):
    """Universal event types emitted to consumers."""

    # Lifecycle
    SESSION_STARTED = "session.started"
    SESSION_ENDED = "session.ended"
    TURN_STARTED = "turn.started"
    TURN_ENDED = "turn.ended"

    # Items
    ITEM_STARTED = "item.started"
    ITEM_DELTA = "item.delta"
    ITEM_COMPLETED = "item.completed"

    # Errors
    ERROR = "error"
    AGENT_UNPARSED = "agent.unparsed"

    # HITL
    PERMISSION_REQUESTED = "permission.requested"
    PERMISSION_RESOLVED = "permission.resolved"
    QUESTION_REQUESTED = "question.requested"
    QUESTION_RESOLVED = "question.resolved"


class EventSource(StrEnum):
    AGENT = "agent"
    DAEMON = "daemon"


class SessionEndReason(StrEnum):
    COMPLETED = "completed"
    ERROR = "error"
    TERMINATED = "terminated"


# -- Items -------------------------------------------------------------------


class ItemKind(StrEnum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    STATUS = "status"


class ItemRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ItemStatus(StrEnum):
    """Item lifecycle state.  ``completed`` and ``failed`` are terminal."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FileAction(StrEnum):
    READ = "read"
    WRITE = "write"
    PATCH = "patch"


class ReasoningVisibility(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


# -- HITL --------------------------------------------------------------------


class PermissionReply(StrEnum):
    """Client reply to a permission request."""

    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"


class PermissionStatus(StrEnum):
    REQUESTED = "requested"
    APPROVED = "approved"
    DENIED = "denied"


class QuestionStatus(StrEnum):
    REQUESTED = "requested"
    ANSWERED = "answered"
    REJECTED = "rejected"


# -- Input -------------------------------------------------------------------


class InputPartType(StrEnum):
    """Content part type in a user prompt."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
