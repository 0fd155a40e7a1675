import asyncio
from dataclasses import dataclass

import pytest

from chatstream.config import ModelConfig
from chatstream.provider import ChatProvider
from chatstream.streaming import StreamChunk, ToolCallDelta, Usage
from chatstream.tools import tool


# ---------------------------------------------------------------------------
# Mock SDK chunk dataclasses (mirrors OpenAI ChatCompletionChunk shape)
# ---------------------------------------------------------------------------

@dataclass
class MockFunctionDelta:
    name: str | None = None
    arguments: str | None = None


@dataclass
class MockToolCallDelta:
    index: int
    id: str | None = None
    type: str | None = None
    function: MockFunctionDelta | None = None


@dataclass
class MockDelta:
    role: str | None = None
    content: str | None = None
    tool_calls: list[MockToolCallDelta] | None = None


@dataclass
class MockChoice:
    delta: MockDelta
    finish_reason: str | None = None
    index: int = 0


@dataclass
class MockUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class MockChunk:
    choices: list[MockChoice]
    usage: MockUsage | None = None


@dataclass
class MockFunction:
    name: str
    arguments: str


@dataclass
class MockToolCall:
    id: str
    type: str
    function: MockFunction


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ChatProvider):
    """Provider that yields pre-queued chunks. No network calls.

    Set ``block_after`` to stop after that many chunks and wait on
    ``release`` before yielding the rest.  ``closed`` records whether the
    stream was shut down, normally or not.
    """

    system = "mock"

    def __init__(self, chunks: list[StreamChunk] | None = None):
        self.chunks: list[StreamChunk] = list(chunks or [])
        self.payloads: list[dict] = []
        self.consumed = 0
        self.closed = False
        self.block_after: int | None = None
        self.release = asyncio.Event()
        self.error: Exception | None = None

    async def stream(self, payload):
        self.payloads.append(payload)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.block_after is not None and i == self.block_after:
                    await self.release.wait()
                self.consumed += 1
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


# ---------------------------------------------------------------------------
# Chunk builder helpers
# ---------------------------------------------------------------------------

def text_chunk(content: str) -> StreamChunk:
    """Chunk carrying only answer text."""
    return StreamChunk(content_delta=content)


def thinking_chunk(reasoning: str) -> StreamChunk:
    """Chunk carrying only reasoning text."""
    return StreamChunk(reasoning_delta=reasoning)


def tool_chunk(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> StreamChunk:
    """Chunk carrying a single tool-call fragment."""
    return StreamChunk(tool_calls=[ToolCallDelta(
        index=index,
        id=call_id,
        type="function" if call_id else None,
        name=name,
        arguments=arguments,
    )])


def usage_chunk(prompt: int, completion: int) -> StreamChunk:
    """Terminal usage-only chunk."""
    return StreamChunk(usage=Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    ))


@pytest.fixture
def config():
    return ModelConfig(token="sk-test", model_id="mock-model")


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet
