"""Universal item and content part models.

An item is a discrete content unit inside a session (a message, a tool call,
a tool result, ...).  Items are created by ``item.started``, refined by zero
or more ``item.delta`` events and closed by exactly one ``item.completed``.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from agentrelay.daemon.models.enums import (
    FileAction,
    ItemKind,
    ItemRole,
    ItemStatus,
    ReasoningVisibility,
)

# -- Content parts -----------------------------------------------------------


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class JsonPart(BaseModel):
    type: Literal["json"] = "json"
    value: Any = None


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    name: str
    arguments: str = ""
    call_id: str


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    call_id: str
    output: str = ""


class FileRefPart(BaseModel):
    type: Literal["file_ref"] = "file_ref"
    path: str
    action: FileAction
    diff: str | None = None


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    path: str
    mime: str | None = None


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str
    visibility: ReasoningVisibility = ReasoningVisibility.PUBLIC


class StatusPart(BaseModel):
    type: Literal["status"] = "status"
    label: str
    detail: str | None = None


ContentPart = Annotated[
    TextPart | JsonPart | ToolCallPart | ToolResultPart | FileRefPart | ImagePart | ReasoningPart | StatusPart,
    Field(discriminator="type"),
]


def part_text(part: ContentPart) -> str:
    """Flatten a single content part to the text a delta would carry."""
    match part:
        case TextPart() | ReasoningPart():
            return part.text
        case ToolCallPart():
            return part.arguments
        case ToolResultPart():
            return part.output
        case JsonPart():
            return json.dumps(part.value, ensure_ascii=False)
        case FileRefPart():
            return part.diff or part.path
        case ImagePart():
            return part.path
        case StatusPart():
            return f"{part.label}: {part.detail}" if part.detail else part.label
    return ""


# -- Item --------------------------------------------------------------------


class UniversalItem(BaseModel):
    """A discrete content unit, stable for the item's lifetime."""

    item_id: str
    native_item_id: str | None = None
    parent_id: str | None = None
    kind: ItemKind
    role: ItemRole | None = None
    status: ItemStatus = ItemStatus.IN_PROGRESS
    content: list[ContentPart] = Field(default_factory=list)

    def text(self) -> str:
        """Concatenate the flattened text of all content parts."""
        return "".join(part_text(p) for p in self.content)
