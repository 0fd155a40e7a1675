"""Views of a streamed response handed to callers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatstream.message import Message
    from chatstream.streaming import StreamPhase, ToolCallFragment, Usage


@dataclass(frozen=True)
class StreamSnapshot:
    """What the callback sees on each drain.

    ``sub_*`` fields hold the text appended since the previous drain;
    ``text`` / ``thinking_text`` hold everything received so far.
    """

    sub_thinking_text: str
    sub_text: str
    thinking_text: str
    text: str
    tool_calls: tuple[ToolCallFragment, ...] = ()
    phase: StreamPhase | None = None
    usage: Usage | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        data["phase"] = self.phase.value if self.phase is not None else None
        return data


@dataclass(frozen=True)
class ChatResult:
    """Final aggregate of one streamed call."""

    thinking_text: str = ""
    text: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None

    def to_message(self) -> Message:
        """The assistant message to append to the conversation history."""
        from chatstream.message import Message, MessageRole, ToolCallRequestMessage

        if self.tool_calls:
            return ToolCallRequestMessage(
                role=MessageRole.ASSISTANT,
                content=self.text or None,
                tool_calls=[tc.to_openai() for tc in self.tool_calls],
                reasoning_content=self.thinking_text or None,
            )
        return Message(role=MessageRole.ASSISTANT, content=self.text)
