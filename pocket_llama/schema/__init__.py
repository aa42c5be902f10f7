"""
JSON Schema parsing module.

This module converts JSON Schemas (and Pydantic models) into the JsonSchemaNode
tree that the grammar compiler turns into GBNF.

Components:
    - types: JsonSchemaNode hierarchy (object, array, scalar, union)
    - parser: dict → node conversion with $ref resolution and cycle checks
    - pydantic_adapter: BaseModel → JSON Schema

Example:
    ```python
    from pocket_llama.schema import parse_schema

    node = parse_schema({
        "type": "object",
        "properties": {"color": {"enum": ["red", "green"]}},
        "required": ["color"]
    })
    ```
"""

from pocket_llama.schema.parser import parse_schema
from pocket_llama.schema.types import (
    ArrayNode,
    JsonSchemaNode,
    ObjectNode,
    ScalarNode,
    UnionNode,
)

__all__ = [
    "parse_schema",
    "JsonSchemaNode",
    "ObjectNode",
    "ArrayNode",
    "ScalarNode",
    "UnionNode",
]
