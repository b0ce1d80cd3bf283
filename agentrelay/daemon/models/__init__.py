"""Data models for the agent relay daemon."""

from agentrelay.daemon.models.api import (
    AbortResponse,
    AgentDescriptor,
    MessageSend,
    PermissionReplyBody,
    PromptAck,
    QuestionReply,
    SessionCreate,
)
from agentrelay.daemon.models.enums import (
    AgentKind,
    ConcurrencyModel,
    EventSource,
    EventType,
    InputPartType,
    ItemKind,
    ItemRole,
    ItemStatus,
    PermissionReply,
    PermissionStatus,
    QuestionStatus,
    SessionEndReason,
)
from agentrelay.daemon.models.events import StderrOutput, UniversalEvent
from agentrelay.daemon.models.input import InputPart
from agentrelay.daemon.models.items import ContentPart, UniversalItem
from agentrelay.daemon.models.session import AgentCapabilities, SessionInfo, SessionInit

__all__ = [
    # API schemas
    "AbortResponse",
    # Session
    "AgentCapabilities",
    "AgentDescriptor",
    # Enums
    "AgentKind",
    "ConcurrencyModel",
    # Items
    "ContentPart",
    "EventSource",
    "EventType",
    # Input
    "InputPart",
    "InputPartType",
    "ItemKind",
    "ItemRole",
    "ItemStatus",
    "MessageSend",
    "PermissionReply",
    "PermissionReplyBody",
    "PermissionStatus",
    "PromptAck",
    "QuestionReply",
    "QuestionStatus",
    "SessionCreate",
    "SessionEndReason",
    "SessionInfo",
    "SessionInit",
    # Events
    "StderrOutput",
    "UniversalEvent",
    "UniversalItem",
]
