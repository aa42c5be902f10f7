"""
Node type definitions for parsed JSON Schemas.

This module defines the tree the schema parser produces and the grammar
compiler consumes. Only the structural part of JSON Schema survives parsing:
property names, requiredness, nesting, scalar kinds and enum membership.

Type Hierarchy:
    JsonSchemaNode (abstract)
    ├── ObjectNode: JSON object with ordered properties and required names
    ├── ArrayNode: JSON array with a single item schema
    ├── ScalarNode: string/number/integer/boolean/null, optionally an enum
    └── UnionNode: one of several alternatives (anyOf, oneOf, type lists)

Each node knows how to:
    - Check its own invariants on construction
    - Describe itself in a short human-readable form
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from pocket_llama.errors import ParseError

SCALAR_KINDS = ("string", "number", "integer", "boolean", "null")


def literal_kind(value: Any) -> str:
    """
    Return the JSON Schema scalar kind of a Python literal.

    Raises:
        ParseError: If the value is not a JSON scalar
    """
    # bool is a subclass of int, so check it first
    if isinstance(value, bool):
        return "boolean"
    if value is None:
        return "null"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    raise ParseError(f"Unsupported schema construct: enum value {value!r} is not a JSON scalar")


@dataclass
class JsonSchemaNode(ABC):
    """Abstract base class for all parsed schema nodes."""

    @abstractmethod
    def describe(self) -> str:
        """
        Return a short human-readable summary of this node.

        Returns:
            str: Summary such as ``object{name*, age}`` or ``string``
        """
        pass


@dataclass
class ObjectNode(JsonSchemaNode):
    """
    A JSON object with typed properties.

    Attributes:
        properties: Property schemas in declared order
        required: Names that must be present
    """

    properties: Dict[str, JsonSchemaNode] = field(default_factory=dict)
    required: Set[str] = field(default_factory=set)

    def __post_init__(self):
        missing = [name for name in sorted(self.required) if name not in self.properties]
        if missing:
            raise ParseError(
                f"Required property '{missing[0]}' is not declared in 'properties'"
            )

    def is_required(self, name: str) -> bool:
        return name in self.required

    def describe(self) -> str:
        members = [
            f"{name}*" if name in self.required else name
            for name in self.properties
        ]
        return "object{" + ", ".join(members) + "}"


@dataclass
class ArrayNode(JsonSchemaNode):
    """
    A JSON array whose items all follow one schema.

    Attributes:
        items: Schema for every element
    """

    items: JsonSchemaNode

    def describe(self) -> str:
        return f"array[{self.items.describe()}]"


@dataclass
class ScalarNode(JsonSchemaNode):
    """
    A JSON scalar, optionally restricted to an ordered set of literals.

    Example JSON Schema:
        {"type": "string", "enum": ["red", "green"]}

    Attributes:
        kind: One of string, number, integer, boolean, null
        enum: Allowed literal values in declared order, or None
    """

    kind: str
    enum: Optional[Tuple[Any, ...]] = None

    def __post_init__(self):
        if self.kind not in SCALAR_KINDS:
            raise ParseError(f"Unsupported schema construct: type '{self.kind}'")

        if self.enum is None:
            return

        self.enum = tuple(self.enum)
        if not self.enum:
            raise ParseError("Unsupported schema construct: empty enum")

        for value in self.enum:
            value_kind = literal_kind(value)
            # An integer literal is also a valid number
            if value_kind == self.kind or (self.kind == "number" and value_kind == "integer"):
                continue
            raise ParseError(
                f"Enum value {value!r} does not match schema type '{self.kind}'"
            )

    def describe(self) -> str:
        if self.enum is None:
            return self.kind
        return f"{self.kind}(" + " | ".join(repr(v) for v in self.enum) + ")"


@dataclass
class UnionNode(JsonSchemaNode):
    """
    A value matching any one of several schemas.

    Attributes:
        options: Alternatives in declared order
    """

    options: List[JsonSchemaNode] = field(default_factory=list)

    def __post_init__(self):
        if not self.options:
            raise ParseError("Unsupported schema construct: empty anyOf/oneOf")

    def describe(self) -> str:
        return " | ".join(option.describe() for option in self.options)
