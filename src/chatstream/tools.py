import inspect
import json
import logging
from typing import Any, Callable

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic_core import PydanticSerializationError, to_json

from chatstream.errors import DecodeError, SchemaDerivationError
from chatstream.instrumentation import record_error, tool_span
from chatstream.message import MessageRole, ToolCallResultMessage
from chatstream.reflection import coerce_arguments, parse_docstring, schema_for
from chatstream.schema import EMPTY_OBJECT_SCHEMA, SchemaNode
from chatstream.streaming import ToolCallFragment

logger = logging.getLogger(__name__)


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


class ToolDescriptor(BaseModel):
    """The function-tool entry sent in a request's ``tools`` list."""

    name: str
    description: str
    parameters: SchemaNode = Field(default_factory=lambda: EMPTY_OBJECT_SCHEMA)
    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.to_dict(),
            },
        }


class Tool(BaseModel):
    """A function the model may call.

    ``parameters`` is either a structured type (dataclass, pydantic model,
    ``TypedDict``) whose schema describes the arguments, or ``None`` for a
    tool that takes no arguments.  Tools built with :func:`tool` derive
    their schema from the wrapped function's signature instead.

    Args:
        name: Tool name, unique within one request.
        description: Shown to the model.
        parameters: Argument type, or ``None``.
        func: Implementation.  Receives keyword arguments for function
            tools, or one instance of ``parameters`` for typed tools.
    """

    name: str
    description: str = ""
    parameters: Any = Field(default=None, exclude=True)
    func: Callable | None = Field(default=None, exclude=True)
    parameters_schema: SchemaNode = Field(
        default_factory=lambda: EMPTY_OBJECT_SCHEMA, exclude=True,
    )
    bound_arguments: dict[str, Any] = Field(default_factory=dict, exclude=True)
    model_config = {"arbitrary_types_allowed": True}

    @model_validator(mode="after")
    def _derive_parameters_schema(self):
        if self.parameters is not None and "parameters_schema" not in self.model_fields_set:
            node = schema_for(self.parameters)
            if not node.is_object or node.is_enum:
                raise SchemaDerivationError(
                    f"parameters of tool {self.name!r} must be an object type"
                )
            self.parameters_schema = node
        return self

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema,
        )

    def model_dump(self, **kwargs):
        """Override to return the function-tool schema instead of attributes"""
        return self.descriptor().to_dict()

    def model_dump_json(self, **kwargs):
        """Override JSON serialization"""
        return json.dumps(self.model_dump())

    def bind(self, **kwargs: Any) -> "Tool":
        """Pre-apply arguments and hide them from the model.

        Returns a new tool; the original is left untouched.
        """
        schema = self.parameters_schema
        properties = {
            name: node for name, node in (schema.properties or {}).items()
            if name not in kwargs
        }
        required = [name for name in schema.required if name not in kwargs]
        return Tool(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            func=self.func,
            parameters_schema=SchemaNode.object(
                properties, required, description=schema.description,
            ),
            bound_arguments={**self.bound_arguments, **kwargs},
        )

    async def __call__(self, **kwargs: Any) -> ToolCallResult:
        if self.func is None:
            raise TypeError(f"tool {self.name!r} has no implementation")
        arguments = {**self.bound_arguments, **kwargs}
        if self.parameters is not None:
            arguments = coerce_arguments(self.parameters, arguments)
            value = TypeAdapter(self.parameters).validate_python(arguments)
            result = self.func(value)
        else:
            result = self.func(**coerce_arguments(self.func, arguments))
        if inspect.isawaitable(result):
            result = await result
        return ToolCallResult(tool_name=self.name, output=result)


def _function_tool(func: Callable, name: str | None, description: str | None) -> Tool:
    summary, _ = parse_docstring(func.__doc__)
    return Tool(
        name=name or func.__name__,
        description=description if description is not None else (summary or ""),
        func=func,
        parameters_schema=schema_for(func).with_description(None),
    )


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="search", description="...")``).  The parameter schema
    comes from the signature; descriptions come from the docstring.
    """
    if func is not None:
        return _function_tool(func, name, description)

    def decorator(f: Callable) -> Tool:
        return _function_tool(f, name, description)

    return decorator


async def dispatch_tool_call(
    fragment: ToolCallFragment,
    tools: list[Tool],
    **extra: Any,
) -> ToolCallResultMessage:
    """Run the tool a completed fragment asks for and wrap the output.

    Unknown tools, malformed arguments and tool exceptions are reported
    back to the model as the message content rather than raised, so the
    conversation can continue.  ``extra`` is passed to tools that accept
    it (e.g. ``context``).
    """
    registry = {t.name: t for t in tools}
    tool_obj = registry.get(fragment.name)
    if tool_obj is None:
        logger.warning(f"Tool not found: {fragment.name}")
        return _result_message(fragment, f"Error: tool '{fragment.name}' not found")

    try:
        params = fragment.parse_arguments()
    except DecodeError as e:
        logger.warning(f"Invalid JSON in arguments for {fragment.name}: {e}")
        return _result_message(fragment, f"Error: invalid arguments: {e}")

    if tool_obj.func is not None and tool_obj.parameters is None:
        accepted = inspect.signature(tool_obj.func).parameters
        params.update({k: v for k, v in extra.items() if k in accepted})

    logger.info(f"Calling {fragment.name} with {params}")
    async with tool_span(fragment) as span:
        try:
            result = await tool_obj(**params)
        except Exception as e:
            logger.error(f"Tool {fragment.name} raised: {e}")
            record_error(span, e)
            return _result_message(fragment, f"Error calling {fragment.name}: {e}")

        output = result.output
        if not isinstance(output, str):
            try:
                output = to_json(output).decode()
            except PydanticSerializationError as e:
                logger.error(f"Tool {fragment.name} returned unserializable output: {e}")
                record_error(span, e)
                return _result_message(
                    fragment, f"Error calling {fragment.name}: output is not JSON serializable",
                )
    return _result_message(fragment, output)


def _result_message(fragment: ToolCallFragment, content: str) -> ToolCallResultMessage:
    return ToolCallResultMessage(
        role=MessageRole.TOOL, content=content, tool_call_id=fragment.id or "",
    )
