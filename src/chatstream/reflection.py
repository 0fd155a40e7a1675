"""Derive JSON schemas from Python type definitions.

Derivation runs in two phases.  :func:`describe_type` introspects a
dataclass, pydantic model, ``TypedDict``, plain annotated class, enum or
function and returns a :class:`TypeDescription` listing each field's
name, annotation, optionality and documentation.  :func:`schema_for`
then maps that description onto a :class:`~chatstream.schema.SchemaNode`,
recursing into nested types so the resulting schema is one
self-contained document.

Field documentation is collected, in order of precedence, from
``Field(description=...)`` / ``Annotated[T, "doc"]``, attribute
docstrings (a string literal directly below the field), and the
parameter section of the class or function docstring (Google, reST or
NumPy style).

Example::

    @dataclass
    class WeatherQuery:
        \"\"\"Look up the weather for a city.\"\"\"

        city: str
        \"\"\"City name, e.g. "Paris".\"\"\"
        days: int | None = None

    schema_for(WeatherQuery).to_dict()
    # {"type": "object", "description": "Look up the weather for a city.",
    #  "properties": {"city": {"type": "string", "description": ...},
    #                 "days": {"type": "integer"}},
    #  "required": ["city"], "additionalProperties": false}
"""

from __future__ import annotations

import ast
import collections.abc
import dataclasses
import enum
import functools
import inspect
import logging
import re
import textwrap
import types
from dataclasses import dataclass
from decimal import Decimal
from typing import (
    Annotated,
    Any,
    Callable,
    ClassVar,
    Literal,
    NotRequired,
    Required,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import BaseModel

from chatstream.errors import SchemaDerivationError
from chatstream.schema import SchemaKind, SchemaNode

logger = logging.getLogger(__name__)

# Parameters that are runtime plumbing, never arguments the model fills in.
SKIPPED_PARAMS = frozenset({"self", "cls", "context"})

_ARRAY_ORIGINS = frozenset({
    list,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
    collections.abc.Iterable,
    collections.abc.Collection,
})


@dataclass(frozen=True)
class FieldDescription:
    """One field of a structured type.

    Args:
        name: Property name as it appears in JSON.
        annotation: Declared type, ``Annotated`` metadata stripped.
        optional: ``True`` when the field may be omitted.
        doc: Documentation text, if any.
    """

    name: str
    annotation: Any
    optional: bool = False
    doc: str | None = None


@dataclass(frozen=True)
class TypeDescription:
    """Introspected shape of a struct-like or enum type."""

    name: str
    kind: str
    doc: str | None = None
    fields: tuple[FieldDescription, ...] = ()
    cases: tuple[str, ...] = ()


# ----------------------------------------------------------------------
# Docstrings
# ----------------------------------------------------------------------

_PARAM_SECTIONS = frozenset({
    "args", "arguments", "parameters", "params",
    "attributes", "fields", "keyword args", "keyword arguments",
})
_OTHER_SECTIONS = frozenset({
    "returns", "return", "yields", "yield", "raises", "raise",
    "examples", "example", "notes", "note", "see also",
    "warnings", "warning", "references", "todo", "methods",
})
_GOOGLE_ITEM = re.compile(r"^\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_NUMPY_ITEM = re.compile(r"^\*{0,2}(\w+)(?:\s*:.*)?$")
_REST_FIELD = re.compile(
    r"^:(?:param|parameter|arg|argument|ivar|cvar|var)\s+(?:[^:]*\s)?(\w+):\s*(.*)$"
)


def parse_docstring(doc: str | None) -> tuple[str | None, dict[str, str]]:
    """Split a docstring into its summary and per-parameter descriptions.

    Understands Google (``Args:`` / ``Attributes:``), reST
    (``:param name:`` / ``:ivar name:``) and NumPy (``Parameters`` with a
    dashed underline) layouts.  Multi-line descriptions are joined with
    newlines.

    Returns:
        ``(summary, {name: description})``.  The summary is the text
        before the first section, or ``None`` when empty.
    """
    if not doc:
        return None, {}
    lines = inspect.cleandoc(doc).splitlines()
    summary: list[str] = []
    params: dict[str, list[str]] = {}
    section: str | None = None
    current: str | None = None
    item_indent: int | None = None

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()
        indent = len(line) - len(line.lstrip())
        following = lines[i + 1].strip() if i + 1 < len(lines) else ""

        if indent == 0 and stripped and len(following) >= 3 and set(following) == {"-"}:
            section = "numpy" if stripped.lower() in _PARAM_SECTIONS else "skip"
            current = None
            i += 2
            continue

        if indent == 0 and stripped.endswith(":"):
            header = stripped[:-1].strip().lower()
            if header in _PARAM_SECTIONS or header in _OTHER_SECTIONS:
                section = "google" if header in _PARAM_SECTIONS else "skip"
                current = None
                item_indent = None
                i += 1
                continue

        rest = _REST_FIELD.match(stripped)
        if rest and indent == 0:
            section = "rest"
            current = rest.group(1)
            params[current] = [rest.group(2)] if rest.group(2) else []
            i += 1
            continue

        i += 1
        if section is None:
            summary.append(line)
            continue
        if not stripped:
            continue

        if section == "google":
            if indent == 0:
                section, current = "skip", None
            elif item_indent is None or indent <= item_indent:
                item_indent = indent
                match = _GOOGLE_ITEM.match(stripped)
                current = match.group(1) if match else None
                if current is not None:
                    params[current] = [match.group(2)] if match.group(2) else []
            elif current is not None:
                params[current].append(stripped)
        elif section == "numpy":
            if indent == 0:
                match = _NUMPY_ITEM.match(stripped)
                current = match.group(1) if match else None
                if current is not None:
                    params[current] = []
            elif current is not None:
                params[current].append(stripped)
        elif section == "rest":
            if indent > 0 and current is not None:
                params[current].append(stripped)
            else:
                current = None

    text = "\n".join(summary).strip() or None
    return text, {name: "\n".join(parts) for name, parts in params.items() if parts}


def _own_doc(cls: type) -> str | None:
    """The docstring written on *cls* itself, ignoring generated ones."""
    doc = cls.__dict__.get("__doc__")
    if not doc:
        return None
    # dataclasses and some enum versions synthesize "Name(...)" signatures
    if doc.startswith(f"{cls.__name__}("):
        return None
    if doc == "An enumeration.":
        return None
    if any(doc == getattr(base, "__doc__", None) for base in cls.__mro__[1:]):
        return None
    return doc


def _attribute_docstrings(cls: type) -> dict[str, str]:
    """Read ``name: T`` followed by a string literal from the class source."""
    try:
        source = textwrap.dedent(inspect.getsource(cls))
    except (OSError, TypeError):
        # classes built at runtime or in the REPL have no source
        return {}
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return {}
    classdef = next((n for n in tree.body if isinstance(n, ast.ClassDef)), None)
    if classdef is None:
        return {}
    docs: dict[str, str] = {}
    for node, after in zip(classdef.body, classdef.body[1:]):
        if (
            isinstance(node, ast.AnnAssign)
            and isinstance(node.target, ast.Name)
            and isinstance(after, ast.Expr)
            and isinstance(after.value, ast.Constant)
            and isinstance(after.value.value, str)
        ):
            docs[node.target.id] = inspect.cleandoc(after.value.value)
    return docs


# ----------------------------------------------------------------------
# Annotation helpers
# ----------------------------------------------------------------------


def _split_annotated(tp: Any) -> tuple[Any, str | None]:
    if get_origin(tp) is Annotated:
        base, *metadata = get_args(tp)
        doc = next((m for m in metadata if isinstance(m, str)), None)
        if doc is None:
            doc = next(
                (getattr(m, "description", None) for m in metadata
                 if isinstance(getattr(m, "description", None), str)),
                None,
            )
        return base, doc
    return tp, None


def _split_optional(tp: Any) -> tuple[Any, bool]:
    """Remove ``None`` from a union.  Returns ``(inner, was_optional)``."""
    if get_origin(tp) in (Union, types.UnionType):
        args = get_args(tp)
        rest = tuple(a for a in args if a is not type(None))
        if len(rest) < len(args):
            if len(rest) == 1:
                return rest[0], True
            return Union[rest], True
    return tp, False


def _unwrap(tp: Any) -> tuple[Any, bool, str | None]:
    """Strip ``Annotated`` and one level of ``Optional``."""
    if get_origin(tp) in (Required, NotRequired):
        tp = get_args(tp)[0]
    tp, doc = _split_annotated(tp)
    tp, optional = _split_optional(tp)
    tp, inner_doc = _split_annotated(tp)
    return tp, optional, doc or inner_doc


def _is_enum(tp: Any) -> bool:
    return inspect.isclass(tp) and issubclass(tp, enum.Enum)


def _is_typeddict(tp: Any) -> bool:
    return inspect.isclass(tp) and issubclass(tp, dict) and hasattr(tp, "__required_keys__")


def is_struct(tp: Any) -> bool:
    """Whether *tp* is a user-defined type with named, annotated fields."""
    if not inspect.isclass(tp) or _is_enum(tp):
        return False
    if dataclasses.is_dataclass(tp) or issubclass(tp, BaseModel) or _is_typeddict(tp):
        return True
    if tp.__module__ == "builtins" or tp.__module__.startswith(("typing", "collections")):
        return False
    return bool(inspect.get_annotations(tp))


# ----------------------------------------------------------------------
# Introspection
# ----------------------------------------------------------------------


def _merge_docs(explicit: str | None, attribute: str | None, section: str | None) -> str | None:
    return explicit or attribute or section


def _describe_struct(cls: type) -> TypeDescription:
    summary, section_docs = parse_docstring(_own_doc(cls))
    attribute_docs = _attribute_docstrings(cls)
    fields: list[FieldDescription] = []

    if issubclass(cls, BaseModel):
        for name, info in cls.model_fields.items():
            annotation, optional, annotated_doc = _unwrap(info.annotation)
            explicit = info.description or next(
                (m for m in info.metadata if isinstance(m, str)), None,
            )
            fields.append(FieldDescription(
                name=info.alias or name,
                annotation=annotation,
                optional=optional,
                doc=_merge_docs(
                    explicit or annotated_doc,
                    attribute_docs.get(name),
                    section_docs.get(name),
                ),
            ))
        return TypeDescription(cls.__name__, "struct", summary, tuple(fields))

    hints = get_type_hints(cls, include_extras=True)
    if dataclasses.is_dataclass(cls):
        names = [f.name for f in dataclasses.fields(cls)]
    else:
        names = [n for n, h in hints.items() if get_origin(h) is not ClassVar]
    optional_keys = getattr(cls, "__optional_keys__", frozenset())

    for name in names:
        annotation, optional, annotated_doc = _unwrap(hints.get(name, Any))
        fields.append(FieldDescription(
            name=name,
            annotation=annotation,
            optional=optional or name in optional_keys,
            doc=_merge_docs(annotated_doc, attribute_docs.get(name), section_docs.get(name)),
        ))
    return TypeDescription(cls.__name__, "struct", summary, tuple(fields))


def _describe_enum(cls: type[enum.Enum]) -> TypeDescription:
    summary, _ = parse_docstring(_own_doc(cls))
    members = list(cls)
    if issubclass(cls, str):
        cases = tuple(m.value for m in members)
    elif issubclass(cls, (int, float, complex, bytes)):
        raise SchemaDerivationError(
            f"enum {cls.__name__} must be string-backed or have no raw type"
        )
    else:
        for member in members:
            if isinstance(member.value, tuple):
                raise SchemaDerivationError(
                    f"enum {cls.__name__}.{member.name} carries associated data, "
                    "which is not supported"
                )
        cases = tuple(m.name for m in members)
    return TypeDescription(cls.__name__, "enum", summary, cases=cases)


def _describe_function(func: Callable[..., Any]) -> TypeDescription:
    summary, section_docs = parse_docstring(func.__doc__)
    hints = get_type_hints(func, include_extras=True)
    fields: list[FieldDescription] = []
    for name, param in inspect.signature(func).parameters.items():
        if name in SKIPPED_PARAMS or param.kind in (
            inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD,
        ):
            continue
        # unannotated parameters are treated as strings
        annotation, optional, annotated_doc = _unwrap(hints.get(name, str))
        fields.append(FieldDescription(
            name=name,
            annotation=annotation,
            optional=optional or param.default is not inspect.Parameter.empty,
            doc=annotated_doc or section_docs.get(name),
        ))
    return TypeDescription(func.__name__, "struct", summary, tuple(fields))


def describe_type(tp: Any) -> TypeDescription:
    """Introspect *tp* into a :class:`TypeDescription`.

    Raises:
        SchemaDerivationError: If *tp* is not a struct-like type, enum or
            function, or is an enum of an unsupported form.
    """
    if _is_enum(tp):
        return _describe_enum(tp)
    if is_struct(tp):
        return _describe_struct(tp)
    if inspect.isfunction(tp) or inspect.ismethod(tp):
        return _describe_function(tp)
    raise SchemaDerivationError(f"cannot derive a schema from {tp!r}")


# ----------------------------------------------------------------------
# Derivation
# ----------------------------------------------------------------------


def _node_for(tp: Any, stack: tuple[Any, ...]) -> SchemaNode:
    tp, _, _ = _unwrap(tp)

    if tp is bool:
        return SchemaNode.scalar(SchemaKind.BOOLEAN)
    if tp is str:
        return SchemaNode.scalar(SchemaKind.STRING)
    if _is_enum(tp) or is_struct(tp):
        return _derive(tp, stack)
    if inspect.isclass(tp):
        if issubclass(tp, bool):
            return SchemaNode.scalar(SchemaKind.BOOLEAN)
        if issubclass(tp, int):
            return SchemaNode.scalar(SchemaKind.INTEGER)
        if issubclass(tp, (float, Decimal)):
            return SchemaNode.scalar(SchemaKind.NUMBER)
        if issubclass(tp, str):
            return SchemaNode.scalar(SchemaKind.STRING)
        if tp in (list, tuple, set, frozenset):
            return SchemaNode.array(SchemaNode.opaque())

    origin = get_origin(tp)
    args = get_args(tp)
    if origin is Literal and args and all(isinstance(a, str) for a in args):
        return SchemaNode.enum(args)
    if origin in _ARRAY_ORIGINS and args:
        return SchemaNode.array(_node_for(args[0], stack))
    if origin is tuple and len(args) == 2 and args[1] is Ellipsis:
        return SchemaNode.array(_node_for(args[0], stack))
    if origin is tuple and args and all(a == args[0] for a in args):
        return SchemaNode.array(_node_for(args[0], stack))

    return SchemaNode.opaque()


def _derive(tp: Any, stack: tuple[Any, ...]) -> SchemaNode:
    if tp in stack:
        chain = " -> ".join(getattr(t, "__name__", repr(t)) for t in (*stack, tp))
        raise SchemaDerivationError(f"recursive type reference: {chain}")
    description = describe_type(tp)
    if description.kind == "enum":
        return SchemaNode.enum(description.cases, description=description.doc)

    stack = (*stack, tp)
    properties: dict[str, SchemaNode] = {}
    required: list[str] = []
    for f in description.fields:
        node = _node_for(f.annotation, stack)
        if f.doc is not None:
            node = node.with_description(f.doc)
        properties[f.name] = node
        if not f.optional:
            required.append(f.name)
    return SchemaNode.object(properties, required, description=description.doc)


@functools.lru_cache(maxsize=None)
def schema_for(tp: Any) -> SchemaNode:
    """Return the (cached) schema for a struct-like type, enum or function.

    Raises:
        SchemaDerivationError: For unsupported enums, recursive type
            graphs, or values that are not type definitions.
    """
    node = _derive(tp, ())
    logger.debug(f"Derived schema for {getattr(tp, '__qualname__', tp)}")
    return node


# ----------------------------------------------------------------------
# Argument coercion
# ----------------------------------------------------------------------


def _enum_member(cls: type[enum.Enum], value: Any) -> Any:
    """Map an advertised enum case string back to its member."""
    if not isinstance(value, str):
        return value
    cases = describe_type(cls).cases
    if value not in cases:
        raise ValueError(
            f"{value!r} is not a valid {cls.__name__}; expected one of {list(cases)}"
        )
    if issubclass(cls, str):
        return cls(value)
    return cls[value]


def _coerce(tp: Any, value: Any) -> Any:
    tp, _, _ = _unwrap(tp)
    if value is None:
        return value
    if _is_enum(tp):
        return _enum_member(tp, value)
    if is_struct(tp):
        return coerce_arguments(tp, value) if isinstance(value, dict) else value
    args = get_args(tp)
    if isinstance(value, list) and args and (
        get_origin(tp) in _ARRAY_ORIGINS or get_origin(tp) is tuple
    ):
        return [_coerce(args[0], item) for item in value]
    return value


def coerce_arguments(target: Any, arguments: dict[str, Any]) -> dict[str, Any]:
    """Replace enum case strings in decoded tool arguments with members.

    *target* is the struct-like type or function whose schema the model
    filled in.  Plain enums are advertised by member name and
    string-backed enums by value, so the strings the model sends are
    turned back into members the same way, recursing into nested
    structs and arrays.  Keys that are not fields of *target* are passed
    through unchanged.

    Raises:
        ValueError: If a string is not one of the advertised cases.
    """
    if not (is_struct(target) or inspect.isfunction(target) or inspect.ismethod(target)):
        return arguments
    fields = {f.name: f.annotation for f in describe_type(target).fields}
    return {
        name: _coerce(fields[name], value) if name in fields else value
        for name, value in arguments.items()
    }


def output_schema(tp: Any) -> str:
    """Compact JSON text of the schema for *tp*."""
    return schema_for(tp).to_json()


def response_format(tp: Any, name: str | None = None) -> dict[str, Any]:
    """Build a ``json_schema`` response-format block for structured output."""
    node = schema_for(tp)
    block: dict[str, Any] = {
        "name": name or getattr(tp, "__name__", "response"),
        "schema": node.to_dict(),
    }
    if node.description is not None:
        block["description"] = node.description
    return {"type": "json_schema", "json_schema": block}
