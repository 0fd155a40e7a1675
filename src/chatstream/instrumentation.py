"""Optional OpenTelemetry instrumentation for chatstream.

Call ``instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the library
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatstream.events import ChatResult
    from chatstream.streaming import ToolCallFragment

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "chatstream") -> None:
    """Enable OpenTelemetry tracing for every streamed call.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install chatstream[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from chatstream.instrumentation import instrument
        instrument()

    See also:
        - `GenAI Semantic Conventions <https://opentelemetry.io/docs/specs/semconv/gen-ai/>`_

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install chatstream[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("chatstream instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent calls will not emit spans.
    """
    global _tracer
    _tracer = None



# Request keys copied onto the completion span, by GenAI attribute name.
_REQUEST_ATTRIBUTES = {
    "temperature": "gen_ai.request.temperature",
    "top_p": "gen_ai.request.top_p",
    "max_completion_tokens": "gen_ai.request.max_tokens",
    "frequency_penalty": "gen_ai.request.frequency_penalty",
    "presence_penalty": "gen_ai.request.presence_penalty",
    "n": "gen_ai.request.choice.count",
}


def request_attributes(system: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Span attributes describing an outgoing chat-completions request."""
    attributes: dict[str, Any] = {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": payload.get("model", ""),
    }
    for key, name in _REQUEST_ATTRIBUTES.items():
        if payload.get(key) is not None:
            attributes[name] = payload[key]
    stop = payload.get("stop")
    if stop:
        attributes["gen_ai.request.stop_sequences"] = (
            [stop] if isinstance(stop, str) else list(stop)
        )
    return attributes


@asynccontextmanager
async def completion_span(system: str, payload: dict[str, Any]):
    """Wrap one streamed ``send_message`` call in a ``chat`` span.

    Yields ``None`` when tracing is disabled.
    """
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    attributes = request_attributes(system, payload)
    with _tracer.start_as_current_span(
        f"chat {attributes['gen_ai.request.model']}",
        kind=SpanKind.CLIENT,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(fragment: "ToolCallFragment"):
    """Wrap the execution of a completed tool call in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    attributes = {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": fragment.name or "",
        "gen_ai.tool.type": fragment.type or "function",
    }
    if fragment.id:
        attributes["gen_ai.tool.call.id"] = fragment.id
    with _tracer.start_as_current_span(
        f"execute_tool {fragment.name}", attributes=attributes,
    ) as span:
        yield span


def record_result(span, result: "ChatResult") -> None:
    """Copy token usage and the finish reason of *result* onto a span."""
    if span is None:
        return
    if result.usage is not None:
        span.set_attribute("gen_ai.usage.input_tokens", result.usage.prompt_tokens)
        span.set_attribute("gen_ai.usage.output_tokens", result.usage.completion_tokens)
    if result.finish_reason:
        span.set_attribute("gen_ai.response.finish_reasons", [result.finish_reason])


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
