"""
JSON Schema parser - converts JSON Schema dicts to the internal node tree.

This module is the main entry point for turning a JSON Schema into the
JsonSchemaNode tree compiled by pocket_llama.grammar. It handles:
    - object, array, string, number, integer, boolean and null types
    - enum and const
    - anyOf / oneOf and type lists such as ["string", "null"]
    - local $ref to "#", "#/$defs/..." and "#/definitions/..."
    - Pydantic model classes (via the pydantic adapter)

Limitations:
    Value keywords such as minimum, maximum, pattern, format and minLength
    are accepted but NOT enforced by the grammar. Each one is logged at
    DEBUG level when it is skipped. Validate generated output with
    pocket_llama.validation when those constraints matter.

    Schema graphs must be finite trees. A $ref that leads back to a schema
    being parsed raises ParseError instead of being flattened.

Usage:
    ```python
    from pocket_llama.schema import parse_schema

    schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "age": {"type": "integer", "minimum": 0}
        },
        "required": ["name"]
    }

    node = parse_schema(schema)
    print(node.describe())  # object{name*, age}
    ```
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pocket_llama.errors import ParseError
from pocket_llama.schema.types import (
    SCALAR_KINDS,
    ArrayNode,
    JsonSchemaNode,
    ObjectNode,
    ScalarNode,
    UnionNode,
    literal_kind,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_KEYWORDS = (
    "allOf",
    "not",
    "if",
    "then",
    "else",
    "patternProperties",
    "dependentSchemas",
    "prefixItems",
)

IGNORED_KEYWORDS = (
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
    "minLength",
    "maxLength",
    "pattern",
    "format",
    "minItems",
    "maxItems",
    "uniqueItems",
    "minProperties",
    "maxProperties",
    "additionalProperties",
    "default",
)


def parse_schema(schema: Union[Mapping[str, Any], type]) -> JsonSchemaNode:
    """
    Parse a JSON Schema dict or Pydantic model class into a JsonSchemaNode.

    Args:
        schema: JSON Schema dict or Pydantic BaseModel subclass

    Returns:
        JsonSchemaNode: Root of the parsed tree

    Raises:
        ParseError: If the schema is malformed, cyclic or uses an
            unsupported construct

    Example:
        ```python
        node = parse_schema({"type": "array", "items": {"type": "string"}})

        from pydantic import BaseModel
        class User(BaseModel):
            name: str

        node = parse_schema(User)
        ```
    """
    if isinstance(schema, type):
        from pocket_llama.schema.pydantic_adapter import pydantic_to_schema
        schema = pydantic_to_schema(schema)

    if not isinstance(schema, Mapping):
        raise ParseError(
            f"Unsupported schema construct: expected a JSON object, got {type(schema).__name__}"
        )

    return _SchemaParser(schema).parse()


class _SchemaParser:
    """Walks one schema document, resolving local references."""

    def __init__(self, document: Mapping[str, Any]):
        self.document = document
        # ids of schema dicts currently on the recursion stack
        self._active: List[int] = []

    def parse(self) -> JsonSchemaNode:
        return self._visit(self.document, "#")

    def _visit(self, schema: Any, path: str) -> JsonSchemaNode:
        if not isinstance(schema, Mapping):
            raise ParseError(
                f"Unsupported schema construct at {path}: expected a JSON object, "
                f"got {type(schema).__name__}"
            )

        if id(schema) in self._active:
            raise ParseError(f"Schema contains a cycle at {path}")

        self._active.append(id(schema))
        try:
            return self._visit_mapping(schema, path)
        finally:
            self._active.pop()

    def _visit_mapping(self, schema: Mapping[str, Any], path: str) -> JsonSchemaNode:
        for keyword in UNSUPPORTED_KEYWORDS:
            if keyword in schema:
                raise ParseError(f"Unsupported schema construct at {path}: '{keyword}'")

        if "$ref" in schema:
            return self._visit(self._resolve_ref(schema["$ref"], path), schema["$ref"])

        for keyword in IGNORED_KEYWORDS:
            if keyword in schema:
                logger.debug(f"Keyword '{keyword}' at {path} is not enforced by the grammar")

        if "anyOf" in schema:
            return self._parse_union(schema["anyOf"], f"{path}/anyOf")
        if "oneOf" in schema:
            return self._parse_union(schema["oneOf"], f"{path}/oneOf")

        schema_type = schema.get("type")
        if schema_type is None:
            schema_type = _infer_type(schema, path)
            if schema_type is None:
                return _parse_mixed_enum(_enum_values(schema, path), path)

        if isinstance(schema_type, list):
            if not schema_type:
                raise ParseError(f"Unsupported schema construct at {path}: empty type list")
            options = []
            for index, single in enumerate(schema_type):
                branch = {k: v for k, v in schema.items() if k != "type"}
                branch["type"] = single
                options.append(self._visit_typed(branch, single, f"{path}/type/{index}"))
            return UnionNode(options=options)

        return self._visit_typed(schema, schema_type, path)

    def _visit_typed(self, schema: Mapping[str, Any], schema_type: Any, path: str) -> JsonSchemaNode:
        if schema_type == "object":
            return self._parse_object(schema, path)
        elif schema_type == "array":
            return self._parse_array(schema, path)
        elif schema_type in SCALAR_KINDS:
            return _parse_scalar(schema, schema_type, path)
        else:
            raise ParseError(f"Unsupported schema construct at {path}: type {schema_type!r}")

    def _parse_object(self, schema: Mapping[str, Any], path: str) -> ObjectNode:
        raw_properties = schema.get("properties", {})
        if not isinstance(raw_properties, Mapping):
            raise ParseError(f"'properties' at {path} must be an object")

        properties: Dict[str, JsonSchemaNode] = {}
        for name, prop_schema in raw_properties.items():
            properties[name] = self._visit(prop_schema, f"{path}/properties/{name}")

        required = schema.get("required", [])
        if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
            raise ParseError(f"'required' at {path} must be a list of property names")

        return ObjectNode(properties=properties, required=set(required))

    def _parse_array(self, schema: Mapping[str, Any], path: str) -> ArrayNode:
        items = schema.get("items")
        if items is None:
            raise ParseError(f"Unsupported schema construct at {path}: array without 'items'")
        if isinstance(items, list):
            raise ParseError(f"Unsupported schema construct at {path}: tuple-form 'items'")

        return ArrayNode(items=self._visit(items, f"{path}/items"))

    def _parse_union(self, options: Any, path: str) -> UnionNode:
        if not isinstance(options, list):
            raise ParseError(f"'{path.rsplit('/', 1)[-1]}' at {path} must be a list")
        return UnionNode(
            options=[self._visit(option, f"{path}/{i}") for i, option in enumerate(options)]
        )

    def _resolve_ref(self, ref: Any, path: str) -> Any:
        """
        Resolve a local JSON pointer against the document root.

        Raises:
            ParseError: For remote or dangling references
        """
        if not isinstance(ref, str) or not ref.startswith("#"):
            raise ParseError(f"Unsupported schema construct at {path}: $ref {ref!r}")

        target: Any = self.document
        pointer = ref[1:]
        if pointer:
            for token in pointer.lstrip("/").split("/"):
                token = token.replace("~1", "/").replace("~0", "~")
                if isinstance(target, Mapping) and token in target:
                    target = target[token]
                else:
                    raise ParseError(f"Unresolvable $ref {ref!r} at {path}")
        return target


def _infer_type(schema: Mapping[str, Any], path: str) -> Optional[str]:
    """
    Infer a missing 'type' from the other keywords present.

    Returns None for a bare enum/const, whose literals decide the kind.
    """
    if "properties" in schema:
        return "object"
    if "items" in schema:
        return "array"
    if "enum" in schema or "const" in schema:
        return None
    raise ParseError(f"Unsupported schema construct at {path}: schema without 'type'")


def _enum_values(schema: Mapping[str, Any], path: str) -> Optional[List[Any]]:
    if "const" in schema:
        return [schema["const"]]
    values = schema.get("enum")
    if values is None:
        return None
    if not isinstance(values, list):
        raise ParseError(f"'enum' at {path} must be a list")
    return values


def _parse_scalar(schema: Mapping[str, Any], kind: str, path: str) -> ScalarNode:
    values = _enum_values(schema, path)
    return ScalarNode(kind=kind, enum=tuple(values) if values is not None else None)


def _parse_mixed_enum(values: List[Any], path: str) -> JsonSchemaNode:
    """Build a node for an untyped enum, splitting mixed kinds into a union."""
    if not values:
        raise ParseError(f"Unsupported schema construct at {path}: empty enum")

    grouped: Dict[str, List[Any]] = {}
    for value in values:
        grouped.setdefault(literal_kind(value), []).append(value)

    if len(grouped) == 1:
        kind, members = next(iter(grouped.items()))
        return ScalarNode(kind=kind, enum=tuple(members))

    return UnionNode(
        options=[ScalarNode(kind=kind, enum=tuple(members)) for kind, members in grouped.items()]
    )
