import inspect
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto

import pytest
from pydantic import BaseModel

from chatstream.errors import SchemaDerivationError
from chatstream.message import MessageRole, ToolCallResultMessage
from chatstream.streaming import FunctionFragment, ToolCallFragment
from chatstream.tools import Tool, ToolCallResult, ToolDescriptor, dispatch_tool_call, tool


@dataclass
class WeatherQuery:
    """Look up the weather."""

    city: str
    days: int | None = None


class Forecast(BaseModel):
    city: str
    high: int


class Priority(Enum):
    high = auto()
    medium = auto()
    low = auto()


@dataclass
class Ticket:
    """File a ticket."""

    title: str
    priority: Priority


@dataclass
class Reading:
    station: str
    taken_at: datetime


def _fragment(name: str, arguments: str, call_id: str = "call_1") -> ToolCallFragment:
    return ToolCallFragment(
        index=0, id=call_id, type="function",
        function=FunctionFragment(name=name, arguments=arguments),
    )


# ---------------------------------------------------------------------------
# Tool descriptors
# ---------------------------------------------------------------------------


class TestToolDescriptor:
    def test_empty_parameters(self):
        t = Tool(name="ping", description="Check liveness")
        assert t.model_dump() == {
            "type": "function",
            "function": {
                "name": "ping",
                "description": "Check liveness",
                "parameters": {
                    "type": "object",
                    "properties": {},
                    "required": [],
                    "additionalProperties": False,
                },
            },
        }

    def test_typed_parameters(self):
        t = Tool(name="weather", description="Get weather", parameters=WeatherQuery)
        params = t.model_dump()["function"]["parameters"]
        assert params["properties"] == {
            "city": {"type": "string"},
            "days": {"type": "integer"},
        }
        assert params["required"] == ["city"]
        assert params["description"] == "Look up the weather."

    def test_non_object_parameters_rejected(self):
        with pytest.raises(SchemaDerivationError):
            Tool(name="bad", parameters=int)

    def test_descriptor(self):
        t = Tool(name="weather", description="Get weather", parameters=WeatherQuery)
        desc = t.descriptor()
        assert isinstance(desc, ToolDescriptor)
        assert desc.name == "weather"
        assert desc.parameters.required == ("city",)
        assert desc.to_dict() == t.model_dump()

    def test_model_dump_json(self):
        t = Tool(name="ping", description="")
        assert json.loads(t.model_dump_json()) == t.model_dump()


# ---------------------------------------------------------------------------
# @tool decorator
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def greet(name: str):
            """Say hello."""
            return f"Hello {name}"

        assert isinstance(greet, Tool)
        assert greet.name == "greet"
        assert greet.description == "Say hello."

    def test_decorator_with_args(self):
        @tool(name="custom_name", description="Custom desc")
        def greet(name: str):
            """Original docstring."""
            return f"Hello {name}"

        assert greet.name == "custom_name"
        assert greet.description == "Custom desc"

    def test_description_is_summary_only(self):
        @tool
        def search(query: str, max_results: int = 10):
            """Search the knowledge base.

            Args:
                query: The search query string.
                max_results: Maximum results to return.
            """

        assert search.description == "Search the knowledge base."
        params = search.model_dump()["function"]["parameters"]
        assert "description" not in params
        assert params["properties"]["query"]["description"] == "The search query string."
        assert params["properties"]["max_results"]["description"] == (
            "Maximum results to return."
        )
        assert params["required"] == ["query"]

    def test_no_arguments(self):
        @tool
        def now():
            """Current time."""

        assert now.model_dump()["function"]["parameters"] == {
            "type": "object",
            "properties": {},
            "required": [],
            "additionalProperties": False,
        }


def test_tool_model_dump_openai_format(sample_tool):
    assert sample_tool.model_dump() == {
        "type": "function",
        "function": {
            "name": "greet",
            "description": "Say hello.",
            "parameters": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                },
                "required": ["name"],
                "additionalProperties": False,
            },
        },
    }


# ---------------------------------------------------------------------------
# Tool.__call__
# ---------------------------------------------------------------------------


class TestToolCall:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        @tool
        def add(a: int, b: int):
            """Add numbers."""
            return a + b

        result = await add(a=2, b=3)
        assert isinstance(result, ToolCallResult)
        assert result.tool_name == "add"
        assert result.output == 5

    @pytest.mark.asyncio
    async def test_async_function(self, sample_async_tool):
        result = await sample_async_tool(name="bob")
        assert result.tool_name == "async_greet"
        assert result.output == "Hello async bob"

    @pytest.mark.asyncio
    async def test_typed_tool_receives_instance(self):
        seen = []

        def lookup(query: WeatherQuery):
            seen.append(query)
            return Forecast(city=query.city, high=21)

        t = Tool(name="weather", parameters=WeatherQuery, func=lookup)
        result = await t(city="Paris")
        assert seen == [WeatherQuery(city="Paris")]
        assert result.output == Forecast(city="Paris", high=21)

    @pytest.mark.asyncio
    async def test_tool_without_func_raises(self):
        with pytest.raises(TypeError):
            await Tool(name="empty")()


# ---------------------------------------------------------------------------
# Tool.bind
# ---------------------------------------------------------------------------


class TestToolBind:
    def test_bind_removes_param_from_schema(self):
        @tool
        def search(db: str, query: str):
            """Search."""
            return f"{db}:{query}"

        bound = search.bind(db="my_db")
        props = bound.model_dump()["function"]["parameters"]["properties"]
        assert "db" not in props
        assert "query" in props
        assert bound.parameters_schema.required == ("query",)

    def test_bind_preserves_name_and_description(self):
        @tool(name="custom_search", description="Custom desc")
        def search(db: str, query: str):
            """Search."""

        bound = search.bind(db="my_db")
        assert bound.name == "custom_search"
        assert bound.description == "Custom desc"

    @pytest.mark.asyncio
    async def test_bound_tool_is_callable(self):
        @tool
        def search(db: str, query: str):
            """Search."""
            return f"{db}:{query}"

        result = await search.bind(db="my_db")(query="hello")
        assert result.output == "my_db:hello"

    def test_bind_does_not_mutate_original(self):
        @tool
        def search(db: str, query: str):
            """Search."""

        search.bind(db="my_db")
        assert list(search.parameters_schema.properties) == ["db", "query"]
        assert search.bound_arguments == {}

    @pytest.mark.asyncio
    async def test_chained_bind(self):
        @tool
        def query(db: str, table: str, column: str):
            """Query a column."""
            return f"{db}.{table}.{column}"

        bound = query.bind(db="my_db").bind(table="users")
        assert list(bound.parameters_schema.properties) == ["column"]
        assert bound.parameters_schema.required == ("column",)
        result = await bound(column="email")
        assert result.output == "my_db.users.email"

    def test_bind_with_context_param_preserved(self):
        @tool
        def stateful(context, db: str, query: str):
            """Stateful search."""

        bound = stateful.bind(db="my_db")
        assert "context" in inspect.signature(bound.func).parameters
        assert "context" not in bound.parameters_schema.properties
        assert "db" not in bound.parameters_schema.properties

    @pytest.mark.asyncio
    async def test_bind_typed_tool(self):
        t = Tool(
            name="weather",
            parameters=WeatherQuery,
            func=lambda q: f"{q.city}/{q.days}",
        )
        bound = t.bind(days=3)
        assert list(bound.parameters_schema.properties) == ["city"]
        assert bound.parameters_schema.description == "Look up the weather."
        result = await bound(city="Oslo")
        assert result.output == "Oslo/3"


# ---------------------------------------------------------------------------
# dispatch_tool_call
# ---------------------------------------------------------------------------


class TestDispatchToolCall:
    @pytest.mark.asyncio
    async def test_runs_tool_and_wraps_output(self, sample_tool):
        msg = await dispatch_tool_call(_fragment("greet", '{"name": "Ann"}'), [sample_tool])
        assert isinstance(msg, ToolCallResultMessage)
        assert msg.role == MessageRole.TOOL
        assert msg.tool_call_id == "call_1"
        assert msg.content == "Hello Ann"

    @pytest.mark.asyncio
    async def test_non_string_output_is_json(self):
        @tool
        def totals():
            """Totals."""
            return {"a": [1, 2]}

        msg = await dispatch_tool_call(_fragment("totals", ""), [totals])
        assert msg.content == '{"a":[1,2]}'

    @pytest.mark.asyncio
    async def test_model_output_is_json(self):
        t = Tool(
            name="weather",
            parameters=WeatherQuery,
            func=lambda q: Forecast(city=q.city, high=9),
        )
        msg = await dispatch_tool_call(_fragment("weather", '{"city": "Rome"}'), [t])
        assert msg.content == '{"city":"Rome","high":9}'

    @pytest.mark.asyncio
    async def test_unknown_tool(self, sample_tool):
        msg = await dispatch_tool_call(_fragment("missing", "{}"), [sample_tool])
        assert msg.content == "Error: tool 'missing' not found"

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, sample_tool):
        msg = await dispatch_tool_call(_fragment("greet", '{"name":'), [sample_tool])
        assert msg.content.startswith("Error: invalid arguments")

    @pytest.mark.asyncio
    async def test_tool_exception_reported(self):
        @tool
        def explode():
            """Always fails."""
            raise RuntimeError("boom")

        msg = await dispatch_tool_call(_fragment("explode", "{}"), [explode])
        assert msg.content == "Error calling explode: boom"

    @pytest.mark.asyncio
    async def test_extra_injected_when_accepted(self):
        @tool
        def stateful(context, query: str):
            """Uses context."""
            return f"{context}:{query}"

        msg = await dispatch_tool_call(
            _fragment("stateful", '{"query": "q"}'), [stateful], context="ctx",
        )
        assert msg.content == "ctx:q"

    @pytest.mark.asyncio
    async def test_extra_ignored_when_not_accepted(self, sample_tool):
        msg = await dispatch_tool_call(
            _fragment("greet", '{"name": "Bo"}'), [sample_tool], context="ctx",
        )
        assert msg.content == "Hello Bo"

    @pytest.mark.asyncio
    async def test_typed_tool_accepts_advertised_enum_cases(self):
        filed = []
        t = Tool(name="file", parameters=Ticket, func=filed.append)
        cases = t.model_dump()["function"]["parameters"]["properties"]["priority"]["enum"]
        assert cases == ["high", "medium", "low"]

        for case in cases:
            msg = await dispatch_tool_call(
                _fragment("file", json.dumps({"title": "t", "priority": case})), [t],
            )
            assert not msg.content.startswith("Error")
        assert [ticket.priority for ticket in filed] == [
            Priority.high, Priority.medium, Priority.low,
        ]

    @pytest.mark.asyncio
    async def test_typed_tool_rejects_unadvertised_enum_case(self):
        t = Tool(name="file", parameters=Ticket, func=lambda ticket: "ok")
        msg = await dispatch_tool_call(
            _fragment("file", '{"title": "t", "priority": "urgent"}'), [t],
        )
        assert msg.content.startswith("Error calling file:")
        assert "urgent" in msg.content

    @pytest.mark.asyncio
    async def test_function_tool_receives_enum_member(self):
        @tool
        def escalate(priority: Priority):
            """Escalate."""
            return priority.name.upper()

        msg = await dispatch_tool_call(_fragment("escalate", '{"priority": "low"}'), [escalate])
        assert msg.content == "LOW"

    @pytest.mark.asyncio
    async def test_datetime_output_is_json(self):
        @tool
        def now():
            """Current time."""
            return datetime(2024, 1, 1)

        msg = await dispatch_tool_call(_fragment("now", ""), [now])
        assert msg.content == '"2024-01-01T00:00:00"'

    @pytest.mark.asyncio
    async def test_dataclass_output_is_json(self):
        @tool
        def latest():
            """Latest reading."""
            return Reading(station="north", taken_at=datetime(2024, 5, 6, 7, 8))

        msg = await dispatch_tool_call(_fragment("latest", ""), [latest])
        assert json.loads(msg.content) == {
            "station": "north", "taken_at": "2024-05-06T07:08:00",
        }

    @pytest.mark.asyncio
    async def test_unserializable_output_reported(self):
        @tool
        def handle():
            """Returns an opaque object."""
            return object()

        msg = await dispatch_tool_call(_fragment("handle", ""), [handle])
        assert msg.content == "Error calling handle: output is not JSON serializable"
        assert msg.tool_call_id == "call_1"
