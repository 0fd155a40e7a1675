"""Streaming primitives for chat-completion responses.

Providers yield :class:`StreamChunk` objects.  The
:class:`StreamAccumulator` folds them into running answer text,
reasoning ("thinking") text and tool calls whose name and arguments
arrive in fragments across multiple chunks.

The accumulator is guarded by an :class:`asyncio.Lock`, so one task may
keep applying chunks while another drains snapshots for display.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatstream.errors import DecodeError
from chatstream.events import ChatResult, StreamSnapshot

logger = logging.getLogger(__name__)


class StreamPhase(Enum):
    """What the model was producing when the last chunk arrived."""

    WAITING = "waiting"
    THINKING = "thinking"
    TEXT = "text"


@dataclass
class Usage:
    """Token accounting reported by the server."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: Any) -> Usage | None:
        if usage is None:
            return None
        return cls(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
        )


@dataclass
class ToolCallDelta:
    """A fragment of a tool call from a single streaming chunk."""

    index: int
    id: str | None = None
    type: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider."""

    role: str | None = None
    content_delta: str | None = None
    reasoning_delta: str | None = None
    tool_calls: list[ToolCallDelta] | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    @classmethod
    def from_openai(cls, chunk: Any) -> StreamChunk:
        """Convert an SDK ``ChatCompletionChunk``.

        Reasoning text is read from ``reasoning`` or ``reasoning_content``
        on the delta, whichever the provider sends.  Chunks without
        choices (the usage-only terminal chunk) carry only usage.
        """
        usage = Usage.from_openai(getattr(chunk, "usage", None))
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return cls(usage=usage)
        choice = choices[0]
        delta = choice.delta
        reasoning = getattr(delta, "reasoning", None)
        if reasoning is None:
            reasoning = getattr(delta, "reasoning_content", None)

        tool_calls = None
        if delta.tool_calls:
            tool_calls = [
                ToolCallDelta(
                    index=tc.index,
                    id=tc.id,
                    type=tc.type,
                    name=tc.function.name if tc.function else None,
                    arguments=tc.function.arguments if tc.function else None,
                )
                for tc in delta.tool_calls
            ]
        return cls(
            role=delta.role,
            content_delta=delta.content,
            reasoning_delta=reasoning,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
            usage=usage,
        )


@dataclass
class FunctionFragment:
    name: str | None = None
    arguments: str | None = None


@dataclass
class ToolCallFragment:
    """An accumulating tool call, keyed by the server-assigned index."""

    index: int
    id: str | None = None
    type: str | None = None
    function: FunctionFragment = field(default_factory=FunctionFragment)

    @property
    def name(self) -> str:
        return self.function.name or ""

    @property
    def arguments(self) -> str:
        return self.function.arguments or ""

    def parse_arguments(self) -> dict[str, Any]:
        """Parse the accumulated arguments as a JSON object.

        Only call this once the tool call is complete (end of stream).

        Raises:
            DecodeError: If the arguments are not a JSON object.
        """
        if not self.arguments:
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise DecodeError(
                f"invalid arguments for tool call {self.index} ({self.name}): {e}"
            ) from e
        if not isinstance(parsed, dict):
            raise DecodeError(
                f"arguments for tool call {self.index} ({self.name}) are not an object"
            )
        return parsed

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type or "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


def _concat(existing: str | None, incoming: str | None) -> str | None:
    if incoming is None:
        return existing
    return (existing or "") + incoming


class StreamAccumulator:
    """Assembles one streamed response from its chunks.

    Keeps cumulative text and thinking text, the pending delta since the
    last drain, all tool-call fragments in first-seen order, and the most
    recent usage report.  Every public method takes the lock, so a drain
    never observes a half-applied chunk.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._text = ""
        self._thinking_text = ""
        self._pending_text = ""
        self._pending_thinking_text = ""
        self._tool_calls: list[ToolCallFragment] = []
        self._tool_calls_dirty = False
        self._usage: Usage | None = None
        self._finish_reason: str | None = None
        self._phase = StreamPhase.WAITING

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def apply(self, chunk: StreamChunk) -> None:
        """Fold one chunk into the running state."""
        async with self._lock:
            if chunk.content_delta:
                self._text += chunk.content_delta
                self._pending_text += chunk.content_delta
            if chunk.reasoning_delta:
                self._thinking_text += chunk.reasoning_delta
                self._pending_thinking_text += chunk.reasoning_delta

            for delta in chunk.tool_calls or ():
                self._merge_tool_call(delta)

            if chunk.usage is not None:
                self._usage = chunk.usage
            if chunk.finish_reason is not None:
                self._finish_reason = chunk.finish_reason

            if chunk.reasoning_delta:
                self._phase = StreamPhase.THINKING
            elif chunk.content_delta:
                self._phase = StreamPhase.TEXT

    def _merge_tool_call(self, delta: ToolCallDelta) -> None:
        existing = next(
            (tc for tc in self._tool_calls if tc.index == delta.index), None,
        )
        if existing is None:
            self._tool_calls.append(ToolCallFragment(
                index=delta.index,
                id=delta.id,
                type=delta.type,
                function=FunctionFragment(name=delta.name, arguments=delta.arguments),
            ))
            logger.debug(f"New tool call at index {delta.index}: {delta.name}")
        else:
            # id and type are fixed by the first chunk that carries them
            if existing.id is None:
                existing.id = delta.id
            if existing.type is None:
                existing.type = delta.type
            existing.function.name = _concat(existing.function.name, delta.name)
            existing.function.arguments = _concat(
                existing.function.arguments, delta.arguments,
            )
        self._tool_calls_dirty = True

    async def reset(self) -> None:
        """Discard all state, cumulative and pending."""
        async with self._lock:
            self._reset_state()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_pending_delta(self) -> bool:
        async with self._lock:
            return bool(
                self._pending_text
                or self._pending_thinking_text
                or self._tool_calls_dirty
            )

    async def snapshot(self) -> StreamSnapshot:
        """Current view without clearing the pending delta."""
        async with self._lock:
            return self._build_snapshot()

    async def drain(self) -> StreamSnapshot:
        """Current view; then clear the pending delta.

        Cumulative text and tool-call fragments are never cleared.
        """
        async with self._lock:
            snap = self._build_snapshot()
            self._pending_text = ""
            self._pending_thinking_text = ""
            self._tool_calls_dirty = False
            return snap

    async def result(self) -> ChatResult:
        """Build the final aggregate result."""
        async with self._lock:
            return ChatResult(
                thinking_text=self._thinking_text,
                text=self._text,
                tool_calls=copy.deepcopy(self._tool_calls),
                usage=copy.copy(self._usage),
                finish_reason=self._finish_reason,
            )

    def _build_snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(
            sub_thinking_text=self._pending_thinking_text,
            sub_text=self._pending_text,
            thinking_text=self._thinking_text,
            text=self._text,
            tool_calls=tuple(copy.deepcopy(self._tool_calls)),
            phase=self._phase,
            usage=copy.copy(self._usage),
        )
