"""Streaming chat example: a weather assistant with one tool.

Demonstrates:
- Deriving a tool schema from a typed function with @tool
- Printing reasoning and answer text as it streams in
- Running requested tool calls and sending the results back

Usage:
    Add OPENAI_API_KEY=sk-... to .env (optionally OPENAI_BASE_URL and
    OPENAI_MODEL), then:
    uv run --env-file=.env examples/weather_chat.py
"""

import asyncio
import logging
from enum import Enum

from chatstream.client import send_message
from chatstream.config import ModelConfig
from chatstream.events import StreamSnapshot
from chatstream.message import Message
from chatstream.tools import dispatch_tool_call, tool


class Unit(str, Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"


@tool
def get_weather(city: str, unit: Unit | None = None):
    """Get the current weather for a city.

    Args:
        city: City name, e.g. "Paris".
        unit: Temperature unit; celsius when omitted.
    """
    unit = Unit(unit or Unit.CELSIUS)
    temperature = 21 if unit == Unit.CELSIUS else 70
    return {"city": city, "temperature": temperature, "unit": unit.value}


def show(snapshot: StreamSnapshot):
    if snapshot.sub_thinking_text:
        print(f"\033[2m{snapshot.sub_thinking_text}\033[0m", end="", flush=True)
    if snapshot.sub_text:
        print(snapshot.sub_text, end="", flush=True)


async def main():
    logging.basicConfig(level=logging.WARNING)
    config = ModelConfig.from_env()
    tools = [get_weather]
    history = [
        Message.system("You are a concise weather assistant."),
        Message.user("What's the weather in Lisbon and in Oslo?"),
    ]

    while True:
        result = await send_message(config, history, tools=tools, on_snapshot=show)
        history.append(result.to_message())
        if not result.tool_calls:
            break
        for call in result.tool_calls:
            print(f"\n[calling {call.name}({call.arguments})]")
            history.append(await dispatch_tool_call(call, tools))

    print()
    if result.usage is not None:
        print(f"[{result.usage.total_tokens} tokens]")


if __name__ == "__main__":
    asyncio.run(main())
