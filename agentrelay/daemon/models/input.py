"""Input part models for user-submitted prompt content.

A prompt is a list of content parts.  Each part has a ``type`` that
determines which field carries the payload.  Adapters serialize the parts
into their agent's native request format (CLI argument, JSON-RPC ``input``
array, HTTP ``parts`` list, ...).
"""

from __future__ import annotations

from pydantic import BaseModel, model_validator

from agentrelay.daemon.models.enums import InputPartType


class InputPart(BaseModel):
    """A single content part in a prompt.

    Attributes
    ----------
    type:
        Part type: text, image, or file.
    text:
        Text content (required when type=text).
    path:
        Local file path (required when type=file; one of path/data for image).
    data:
        Base64-encoded image bytes (alternative to ``path`` for images).
    mime:
        MIME type hint for image/file parts.
    """

    type: InputPartType
    text: str | None = None
    path: str | None = None
    data: str | None = None
    mime: str | None = None

    @model_validator(mode="after")
    def _validate_payload(self) -> InputPart:
        """Ensure the correct payload field is set for the part type."""
        match self.type:
            case InputPartType.TEXT:
                if not self.text:
                    msg = "text field is required when type='text'"
                    raise ValueError(msg)
            case InputPartType.IMAGE:
                if not self.path and not self.data:
                    msg = "path or data is required when type='image'"
                    raise ValueError(msg)
            case InputPartType.FILE:
                if not self.path:
                    msg = "path field is required when type='file'"
                    raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Convenience constructors
# ---------------------------------------------------------------------------


def text_part(text: str) -> InputPart:
    """Create a text input part."""
    return InputPart(type=InputPartType.TEXT, text=text)


def image_part(path: str | None = None, *, data: str | None = None, mime: str | None = None) -> InputPart:
    """Create an image input part from a local path or base64 data."""
    return InputPart(type=InputPartType.IMAGE, path=path, data=data, mime=mime)


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def prompt_text(parts: list[InputPart]) -> str:
    """Render parts as one text prompt for agents that only accept text.

    File and image parts become ``@path`` references, the convention the
    CLI agents use for attaching local files.
    """
    chunks: list[str] = []
    for part in parts:
        if part.type == InputPartType.TEXT:
            chunks.append(part.text or "")
        elif part.path:
            chunks.append(f"@{part.path}")
    return "\n\n".join(chunks)
