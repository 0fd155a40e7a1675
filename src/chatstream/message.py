import base64
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, field_serializer

ImageDetail = Literal["low", "high", "auto"]

_IMAGE_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG", "image/png"),
    (b"GIF", "image/gif"),
    (b"RIFF", "image/webp"),
)


def detect_image_mime_type(data: bytes) -> str:
    """Guess an image MIME type from its leading magic bytes.

    Recognizes JPEG, PNG, GIF and WebP; anything else, including inputs
    shorter than four bytes, is reported as ``image/jpeg``.
    """
    if len(data) >= 4:
        for signature, mime_type in _IMAGE_SIGNATURES:
            if data.startswith(signature):
                return mime_type
    return "image/jpeg"


def image_data_url(data: bytes) -> str:
    """Encode raw image bytes as a base64 ``data:`` URL."""
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{detect_image_mime_type(data)};base64,{encoded}"


def image_parts(
    image_urls: list[str] | None = None,
    images: list[bytes] | None = None,
    detail: ImageDetail = "auto",
) -> list[dict[str, Any]]:
    """Build ``image_url`` content parts from URLs and raw image bytes."""
    if detail not in ("low", "high", "auto"):
        raise ValueError(f"detail must be 'low', 'high' or 'auto', got {detail!r}")
    urls = list(image_urls or []) + [image_data_url(data) for data in images or []]
    return [
        {"type": "image_url", "image_url": {"url": url, "detail": detail}}
        for url in urls
    ]


def _content(text: str | None, parts: list[dict[str, Any]]) -> str | list[dict[str, Any]] | None:
    if not parts:
        return text
    if text:
        return [{"type": "text", "text": text}, *parts]
    return parts


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str | list[dict[str, Any]] | None = None
    name: str | None = None

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @property
    def text_content(self) -> str | None:
        """The text of the message, with image parts left out."""
        if self.content is None or isinstance(self.content, str):
            return self.content
        texts = [p["text"] for p in self.content if p.get("type") == "text"]
        return "\n".join(texts) if texts else None

    def to_payload(self) -> dict[str, Any]:
        """The message as it goes into the request body."""
        return self.model_dump(exclude_none=True)

    @classmethod
    def system(cls, text: str, name: str | None = None) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=text, name=name)

    @classmethod
    def user(
        cls,
        text: str | None = None,
        name: str | None = None,
        image_urls: list[str] | None = None,
        images: list[bytes] | None = None,
        detail: ImageDetail = "auto",
    ) -> "Message":
        """A user message, optionally with images attached as content parts.

        ``image_urls`` may be http(s) URLs or ``data:`` URLs; ``images``
        are raw image bytes, sent inline as base64 ``data:`` URLs.  With
        images and no text the message carries only image parts.
        """
        parts = image_parts(image_urls, images, detail)
        return cls(role=MessageRole.USER, content=_content(text, parts), name=name)

    @classmethod
    def assistant(cls, text: str, name: str | None = None) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=text, name=name)

    @classmethod
    def tool(
        cls,
        text: str | None,
        tool_call_id: str,
        images: list[bytes] | None = None,
        detail: ImageDetail = "auto",
    ) -> "ToolCallResultMessage":
        """A tool result, optionally carrying images the tool produced."""
        return ToolCallResultMessage(
            role=MessageRole.TOOL,
            content=_content(text, image_parts(images=images, detail=detail)),
            tool_call_id=tool_call_id,
        )
class ToolCallRequestMessage(Message):
    """Assistant turn that asked for one or more tool calls.

    ``tool_calls`` accepts OpenAI-shaped dicts or objects exposing
    ``id``, ``type`` and ``function.name`` / ``function.arguments``.
    """

    tool_calls: list
    reasoning_content: str | None = None

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list) -> list[dict]:
        return [
            t if isinstance(t, dict) else {
                "id": t.id,
                "type": getattr(t, "type", None) or "function",
                "function": {
                    "arguments": t.function.arguments,
                    "name": t.function.name
                }
            }
            for t in tool_calls
        ]


class ToolCallResultMessage(Message):
    tool_call_id: str
