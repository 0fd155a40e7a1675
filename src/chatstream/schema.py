"""In-memory JSON Schema fragments.

A :class:`SchemaNode` is one of four shapes: a scalar, an object with
properties, an array with an item schema, or a string restricted to an
enum.  Nodes are immutable; use the ``scalar`` / ``object`` / ``array`` /
``enum`` constructors rather than building them by hand so the shape
invariants are checked.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

JSONValue = Union[
    str, int, float, bool, None, list["JSONValue"], dict[str, "JSONValue"]
]


class SchemaKind(Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


_SCALARS = {
    SchemaKind.STRING,
    SchemaKind.INTEGER,
    SchemaKind.NUMBER,
    SchemaKind.BOOLEAN,
}


@dataclass(frozen=True)
class SchemaNode:
    """One JSON Schema fragment.

    Args:
        kind: The JSON type of the fragment.
        description: Free text shown to the model.
        properties: Object properties, in declaration order.  ``None`` on
            an object node means "any object" (no further structure).
        required: Names of properties whose source field is not optional.
        items: Element schema for arrays.
        enum_values: Allowed literals for enum-strings.
    """

    kind: SchemaKind
    description: str | None = None
    properties: Mapping[str, SchemaNode] | None = None
    required: tuple[str, ...] = ()
    items: SchemaNode | None = None
    enum_values: tuple[str, ...] | None = None

    # -- constructors ---------------------------------------------------

    @classmethod
    def scalar(cls, kind: SchemaKind, description: str | None = None) -> SchemaNode:
        if kind not in _SCALARS:
            raise ValueError(f"{kind.value} is not a scalar kind")
        return cls(kind=kind, description=description)

    @classmethod
    def object(
        cls,
        properties: Mapping[str, SchemaNode] | None = None,
        required: list[str] | tuple[str, ...] = (),
        description: str | None = None,
    ) -> SchemaNode:
        props = dict(properties or {})
        missing = [name for name in required if name not in props]
        if missing:
            raise ValueError(f"required names not in properties: {missing}")
        return cls(
            kind=SchemaKind.OBJECT,
            description=description,
            properties=MappingProxyType(props),
            required=tuple(required),
        )

    @classmethod
    def opaque(cls, description: str | None = None) -> SchemaNode:
        """An object node with no declared structure."""
        return cls(kind=SchemaKind.OBJECT, description=description)

    @classmethod
    def array(cls, items: SchemaNode, description: str | None = None) -> SchemaNode:
        return cls(kind=SchemaKind.ARRAY, description=description, items=items)

    @classmethod
    def enum(
        cls, values: list[str] | tuple[str, ...], description: str | None = None,
    ) -> SchemaNode:
        return cls(
            kind=SchemaKind.STRING,
            description=description,
            enum_values=tuple(values),
        )

    # -- queries --------------------------------------------------------

    @property
    def is_object(self) -> bool:
        return self.kind is SchemaKind.OBJECT

    @property
    def is_enum(self) -> bool:
        return self.enum_values is not None

    def __copy__(self) -> SchemaNode:
        return self

    def __deepcopy__(self, memo: dict) -> SchemaNode:
        return self

    def with_description(self, description: str | None) -> SchemaNode:
        """Return a copy whose root description is *description*.

        Properties, items and enum values are kept as they are.
        """
        return replace(self, description=description)

    # -- serialization --------------------------------------------------

    def to_dict(self) -> dict[str, JSONValue]:
        """Serialize to the JSON Schema shape the chat API expects."""
        out: dict[str, JSONValue] = {"type": self.kind.value}
        if self.description is not None:
            out["description"] = self.description
        if self.kind is SchemaKind.OBJECT and self.properties is not None:
            out["properties"] = {
                name: node.to_dict() for name, node in self.properties.items()
            }
            out["required"] = list(self.required)
            out["additionalProperties"] = False
        elif self.kind is SchemaKind.ARRAY and self.items is not None:
            out["items"] = self.items.to_dict()
        if self.enum_values is not None:
            out["enum"] = list(self.enum_values)
        return out

    def to_json(self) -> str:
        """Compact JSON text; identical input always yields identical text."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


EMPTY_OBJECT_SCHEMA = SchemaNode.object()
