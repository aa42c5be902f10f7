"""
Unit tests for validator.
"""

import pytest

from pocket_llama.errors import ParseError
from pocket_llama.validation import (
    format_violations,
    summarize_violations,
    validate_document,
    validate_instance,
)


class TestValidator:
    """Test JSON Schema validation."""

    def test_validate_valid_json(self, person_schema):
        """Test validating valid JSON."""
        report = validate_document('{"name": "Alice"}', person_schema)

        assert report.is_valid is True
        assert report.violations == []
        assert report.instance == {"name": "Alice"}

    def test_validate_invalid_json_syntax(self, person_schema):
        """Test validating invalid JSON syntax."""
        report = validate_document('{"name": "Alice"', person_schema)

        assert report.is_valid is False
        assert len(report.violations) == 1
        assert report.violations[0].validator == "json"
        assert report.violations[0].message.startswith("Invalid JSON:")
        assert report.instance is None

    def test_validate_missing_required_field(self, person_schema):
        """Test validation with missing required field."""
        report = validate_document('{"age": 30}', person_schema)

        assert report.is_valid is False
        assert report.violations[0].path == "root"
        assert report.violations[0].validator == "required"

    def test_validate_wrong_type(self, person_schema):
        """Test validation with a wrongly typed nested value."""
        report = validate_instance({"name": "A", "age": "old"}, person_schema)

        violation = report.violations[0]
        assert violation.path == ".age"
        assert violation.validator == "type"
        assert violation.expected == "number"

    def test_value_keywords_are_enforced(self):
        """Test that keywords the grammar skips are still validated."""
        schema = {"type": "integer", "minimum": 0}
        report = validate_instance(-1, schema)

        assert not report.is_valid
        assert report.violations[0].validator == "minimum"

    def test_invalid_schema(self):
        """Test that a broken schema raises ParseError."""
        with pytest.raises(ParseError, match="Invalid JSON schema"):
            validate_instance({}, {"type": "nonsense"})


class TestFormatting:
    """Test violation formatting."""

    def test_format_violations(self, person_schema):
        """Test formatting several violations."""
        report = validate_instance({"age": "x"}, person_schema)
        text = format_violations(report.violations)

        assert text.startswith("Validation failed with 2 error(s):")
        assert "  1. At " in text
        assert "  2. At " in text

    def test_format_no_violations(self):
        """Test formatting an empty list."""
        assert format_violations([]) == "No validation errors"

    def test_summarize_violations(self, person_schema):
        """Test converting violations to plain dicts."""
        report = validate_instance({"name": 1}, person_schema)

        assert summarize_violations(report.violations) == [
            {"path": ".name", "message": "1 is not of type 'string'", "validator": "type"}
        ]
