"""The streaming chat-completion call.

:func:`send_message` sends one request, folds the streamed chunks into a
:class:`~chatstream.streaming.StreamAccumulator`, hands drained
snapshots to the caller's callback and returns the final
:class:`~chatstream.events.ChatResult`.
"""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from chatstream.config import ModelConfig
from chatstream.events import ChatResult, StreamSnapshot
from chatstream.instrumentation import completion_span, record_error, record_result
from chatstream.message import Message
from chatstream.provider import ChatProvider, OpenAIProvider
from chatstream.reflection import response_format as response_format_for
from chatstream.streaming import StreamAccumulator, StreamChunk
from chatstream.tools import Tool, ToolDescriptor

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[StreamSnapshot], Awaitable[None] | None]

DEFAULT_TEMPERATURE = 0.6


def _message_payload(message: Message | dict[str, Any]) -> dict[str, Any]:
    if isinstance(message, Message):
        return message.to_payload()
    return message


def _tool_payload(t: Tool | ToolDescriptor | dict[str, Any]) -> dict[str, Any]:
    if isinstance(t, Tool):
        return t.model_dump()
    if isinstance(t, ToolDescriptor):
        return t.to_dict()
    return t


def build_payload(
    config: ModelConfig,
    messages: list[Message | dict[str, Any]],
    *,
    tools: list[Tool | ToolDescriptor | dict[str, Any]] | None = None,
    temperature: float | None = DEFAULT_TEMPERATURE,
    top_p: float | None = None,
    max_completion_tokens: int | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: str | list[str] | None = None,
    n: int | None = None,
    parallel_tool_calls: bool | None = None,
    tool_choice: str | dict[str, Any] | None = None,
    response_format: type | dict[str, Any] | None = None,
    user: str | None = None,
    extra_body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the chat-completion request body.

    Sampling parameters left as ``None`` are omitted.  ``response_format``
    may be a ready dict or a structured type, in which case a
    ``json_schema`` block is derived from it.  The config's ``extra_body``
    is merged first, then the per-call ``extra_body`` on top.
    """
    if response_format is not None and not isinstance(response_format, dict):
        response_format = response_format_for(response_format)

    optional = {
        "temperature": temperature,
        "top_p": top_p,
        "max_completion_tokens": max_completion_tokens,
        "frequency_penalty": frequency_penalty,
        "presence_penalty": presence_penalty,
        "stop": stop,
        "n": n,
        "parallel_tool_calls": parallel_tool_calls,
        "tool_choice": tool_choice,
        "response_format": response_format,
        "user": user,
    }
    payload: dict[str, Any] = {
        "model": config.model_id,
        "messages": [_message_payload(m) for m in messages],
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    if tools:
        payload["tools"] = [_tool_payload(t) for t in tools]
    payload.update(config.extra_body)
    if extra_body:
        payload.update(extra_body)
    return payload


async def _emit(on_snapshot: SnapshotCallback | None, snapshot: StreamSnapshot) -> None:
    if on_snapshot is None:
        return
    result = on_snapshot(snapshot)
    if inspect.isawaitable(result):
        await result


async def _consume(
    stream: AsyncIterator[StreamChunk],
    accumulator: StreamAccumulator,
    on_snapshot: SnapshotCallback | None,
) -> None:
    """Apply every chunk, draining after each one that changed something."""
    async for chunk in stream:
        await accumulator.apply(chunk)
        if await accumulator.has_pending_delta():
            await _emit(on_snapshot, await accumulator.drain())


async def _consume_polled(
    stream: AsyncIterator[StreamChunk],
    accumulator: StreamAccumulator,
    on_snapshot: SnapshotCallback | None,
    interval: float,
) -> None:
    """Apply every chunk while a background task drains every *interval* s.

    If the callback raises inside the poller, the consumer is cancelled
    and the callback's exception is raised in its place.
    """
    consumer = asyncio.current_task()
    failure: list[Exception] = []

    async def poll() -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                if await accumulator.has_pending_delta():
                    await _emit(on_snapshot, await accumulator.drain())
        except Exception as e:
            failure.append(e)
            consumer.cancel()

    poller = asyncio.create_task(poll())
    try:
        async for chunk in stream:
            await accumulator.apply(chunk)
    except asyncio.CancelledError:
        if failure:
            consumer.uncancel()
            raise failure[0] from None
        raise
    finally:
        poller.cancel()
        await asyncio.gather(poller, return_exceptions=True)


async def send_message(
    config: ModelConfig,
    messages: list[Message | dict[str, Any]],
    *,
    on_snapshot: SnapshotCallback | None = None,
    tools: list[Tool | ToolDescriptor | dict[str, Any]] | None = None,
    temperature: float | None = DEFAULT_TEMPERATURE,
    top_p: float | None = None,
    max_completion_tokens: int | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: str | list[str] | None = None,
    n: int | None = None,
    parallel_tool_calls: bool | None = None,
    tool_choice: str | dict[str, Any] | None = None,
    response_format: type | dict[str, Any] | None = None,
    user: str | None = None,
    extra_body: dict[str, Any] | None = None,
    provider: ChatProvider | None = None,
    drain_interval: float | None = None,
) -> ChatResult:
    """Stream one chat completion and return the aggregate result.

    ``on_snapshot`` (sync or async) receives each drained
    :class:`StreamSnapshot`.  With ``drain_interval=None`` a snapshot is
    drained after every chunk that changed the state; otherwise a
    background task drains every ``drain_interval`` seconds.  Either way
    one last snapshot is always emitted once the stream ends, and its
    cumulative fields equal the returned result's.

    Raises:
        MissingCredentialError: No token configured; nothing is sent.
        InvalidEndpointError: The URL cannot be built; nothing is sent.
        TransportError: Connection failure, timeout or non-2xx response.
        DecodeError: A streamed chunk could not be decoded.
        asyncio.CancelledError: The calling task was cancelled.  The
            stream is closed and no result is produced.
    """
    config.validate_for_request()
    if drain_interval is not None and drain_interval <= 0:
        raise ValueError("drain_interval must be positive")

    payload = build_payload(
        config,
        messages,
        tools=tools,
        temperature=temperature,
        top_p=top_p,
        max_completion_tokens=max_completion_tokens,
        frequency_penalty=frequency_penalty,
        presence_penalty=presence_penalty,
        stop=stop,
        n=n,
        parallel_tool_calls=parallel_tool_calls,
        tool_choice=tool_choice,
        response_format=response_format,
        user=user,
        extra_body=extra_body,
    )
    if provider is None:
        provider = OpenAIProvider(config)

    accumulator = StreamAccumulator()
    async with completion_span(provider.system, payload) as span:
        logger.debug(
            f"Streaming {config.model_id} with {len(payload['messages'])} messages"
        )
        try:
            async with contextlib.aclosing(provider.stream(payload)) as stream:
                if drain_interval is None:
                    await _consume(stream, accumulator, on_snapshot)
                else:
                    await _consume_polled(
                        stream, accumulator, on_snapshot, drain_interval,
                    )
            await _emit(on_snapshot, await accumulator.drain())
            result = await accumulator.result()
        except Exception as e:
            record_error(span, e)
            raise
        record_result(span, result)

    logger.info(
        f"Completed {config.model_id}: {len(result.text)} chars, "
        f"{len(result.tool_calls)} tool calls, finish_reason={result.finish_reason}"
    )
    return result
