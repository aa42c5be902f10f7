"""
Unit tests for schema parser.
"""

import pytest
from pydantic import BaseModel

from pocket_llama.errors import ParseError
from pocket_llama.schema import parse_schema
from pocket_llama.schema.types import ArrayNode, ObjectNode, ScalarNode, UnionNode


class TestSchemaParser:
    """Test schema parsing functionality."""

    def test_parse_simple_string(self):
        """Test parsing simple string schema."""
        node = parse_schema({"type": "string"})

        assert isinstance(node, ScalarNode)
        assert node.kind == "string"
        assert node.enum is None

    def test_value_keywords_are_accepted(self):
        """Test that minimum/maxLength and friends parse but are not modelled."""
        node = parse_schema({"type": "integer", "minimum": 0, "maximum": 100})

        assert isinstance(node, ScalarNode)
        assert node.kind == "integer"

    def test_parse_string_with_enum(self):
        """Test parsing string with enum constraint keeps declared order."""
        node = parse_schema({"type": "string", "enum": ["red", "green", "blue"]})
        assert node.enum == ("red", "green", "blue")

    def test_parse_const(self):
        """Test that const becomes a one-value enum."""
        node = parse_schema({"const": "v1"})

        assert isinstance(node, ScalarNode)
        assert node.kind == "string"
        assert node.enum == ("v1",)

    def test_enum_type_mismatch(self):
        """Test that enum values must match the declared type."""
        with pytest.raises(ParseError, match="does not match schema type"):
            parse_schema({"type": "integer", "enum": [1, "two"]})

    def test_parse_object(self):
        """Test parsing object schema."""
        schema = {
            "type": "object",
            "properties": {"name": {"type": "string"}, "age": {"type": "integer"}},
            "required": ["name"],
        }
        node = parse_schema(schema)

        assert isinstance(node, ObjectNode)
        assert list(node.properties) == ["name", "age"]
        assert node.is_required("name")
        assert not node.is_required("age")
        assert node.describe() == "object{name*, age}"

    def test_required_must_be_declared(self):
        """Test that required names missing from properties are rejected."""
        with pytest.raises(ParseError, match="Required property 'email'"):
            parse_schema({"type": "object", "properties": {}, "required": ["email"]})

    def test_parse_array(self):
        """Test parsing array schema."""
        node = parse_schema({"type": "array", "items": {"type": "number"}})

        assert isinstance(node, ArrayNode)
        assert node.describe() == "array[number]"

    def test_array_without_items(self):
        """Test that an array without items is rejected."""
        with pytest.raises(ParseError, match="array without 'items'"):
            parse_schema({"type": "array"})

    def test_type_inferred_from_properties(self):
        """Test that a schema with properties and no type is an object."""
        node = parse_schema({"properties": {"id": {"type": "integer"}}})
        assert isinstance(node, ObjectNode)


class TestUnions:
    """Test anyOf, oneOf and type lists."""

    def test_any_of(self):
        """Test parsing anyOf."""
        node = parse_schema({"anyOf": [{"type": "string"}, {"type": "integer"}]})

        assert isinstance(node, UnionNode)
        assert [o.kind for o in node.options] == ["string", "integer"]

    def test_type_list(self):
        """Test that a type list becomes a union."""
        node = parse_schema({"type": ["string", "null"]})

        assert isinstance(node, UnionNode)
        assert node.describe() == "string | null"

    def test_mixed_enum(self):
        """Test that an untyped enum of mixed kinds splits by kind."""
        node = parse_schema({"enum": ["a", 1, None, "b"]})

        assert isinstance(node, UnionNode)
        assert [(o.kind, o.enum) for o in node.options] == [
            ("string", ("a", "b")),
            ("integer", (1,)),
            ("null", (None,)),
        ]


class TestReferences:
    """Test $ref resolution."""

    def test_defs_reference(self):
        """Test resolving a #/$defs reference."""
        schema = {
            "$defs": {"point": {"type": "object", "properties": {"x": {"type": "number"}}}},
            "type": "array",
            "items": {"$ref": "#/$defs/point"},
        }
        node = parse_schema(schema)
        assert node.describe() == "array[object{x}]"

    def test_cycle_is_rejected(self):
        """Test that a self-referencing schema raises instead of looping."""
        schema = {
            "$defs": {
                "node": {"type": "object", "properties": {"next": {"$ref": "#/$defs/node"}}}
            },
            "$ref": "#/$defs/node",
        }
        with pytest.raises(ParseError, match="cycle"):
            parse_schema(schema)

    def test_remote_reference(self):
        """Test that non-local references are unsupported."""
        with pytest.raises(ParseError, match="Unsupported schema construct"):
            parse_schema({"$ref": "https://example.com/schema.json"})

    def test_dangling_reference(self):
        """Test that a reference to a missing definition fails."""
        with pytest.raises(ParseError, match="Unresolvable"):
            parse_schema({"$ref": "#/$defs/missing"})


class TestUnsupported:
    """Test rejection of constructs the grammar cannot express."""

    @pytest.mark.parametrize("keyword", ["allOf", "not", "if", "patternProperties", "prefixItems"])
    def test_unsupported_keyword(self, keyword):
        """Test that unsupported keywords name the construct and path."""
        schema = {"type": "object", "properties": {"a": {keyword: []}}}

        with pytest.raises(ParseError) as exc_info:
            parse_schema(schema)
        assert str(exc_info.value) == f"Unsupported schema construct at #/properties/a: '{keyword}'"

    def test_non_mapping_schema(self):
        """Test that a non-object schema is rejected."""
        with pytest.raises(ParseError):
            parse_schema(["string"])


class TestPydantic:
    """Test Pydantic model support."""

    def test_pydantic_model(self):
        """Test parsing a Pydantic model class."""

        class User(BaseModel):
            name: str
            age: int

        node = parse_schema(User)

        assert isinstance(node, ObjectNode)
        assert node.required == {"name", "age"}
