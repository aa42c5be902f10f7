"""
JSON Schema validation with detailed violation reports.

The grammar only enforces structure. This module checks values against the
full schema with jsonschema, which is what tool-call arguments and the CLI
``validate`` command need:
    1. Range, length and pattern keywords are not compiled into grammars
    2. Tool arguments come from free text and may not match at all
    3. Every violation is reported, not just the first

Usage:
    ```python
    from pocket_llama.validation import validate_document

    schema = {"type": "object", "properties": {"age": {"type": "integer"}}}
    report = validate_document('{"age": 25}', schema)
    if not report.is_valid:
        print(format_violations(report.violations))
    ```
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from pocket_llama.errors import ParseError

logger = logging.getLogger(__name__)


@dataclass
class SchemaViolation:
    """
    One way in which an instance breaks its schema.

    Attributes:
        path: Location in the instance (e.g. ".address.city" or "root")
        message: jsonschema's message
        validator: Keyword that failed (e.g. "required", "type")
        expected: Value of the failing keyword in the schema
    """
    path: str
    message: str
    validator: str
    expected: Any


@dataclass
class ValidationReport:
    """
    Outcome of validating one instance.

    Attributes:
        violations: Every violation found, empty when valid
        instance: Decoded instance (None if the text was not JSON)
    """
    violations: List[SchemaViolation] = field(default_factory=list)
    instance: Optional[Any] = None

    @property
    def is_valid(self) -> bool:
        return not self.violations


def validate_instance(instance: Any, schema: Mapping[str, Any]) -> ValidationReport:
    """
    Validate a decoded JSON value against a schema.

    Args:
        instance: Decoded JSON value
        schema: JSON Schema dictionary

    Returns:
        ValidationReport: All violations, in jsonschema's order

    Raises:
        ParseError: If the schema itself is invalid
    """
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ParseError(f"Invalid JSON schema: {e.message}") from e

    validator = Draft7Validator(schema)
    violations = [_to_violation(error) for error in validator.iter_errors(instance)]
    return ValidationReport(violations=violations, instance=instance)


def validate_document(text: str, schema: Mapping[str, Any]) -> ValidationReport:
    """
    Decode a JSON document and validate it.

    Invalid JSON is reported as a single violation with validator "json".

    Example:
        ```python
        report = validate_document('{"age": 25}', {"required": ["name"]})
        assert not report.is_valid
        ```
    """
    try:
        instance = json.loads(text)
    except json.JSONDecodeError as e:
        return ValidationReport(
            violations=[
                SchemaViolation(
                    path="root",
                    message=f"Invalid JSON: {e.msg} at position {e.pos}",
                    validator="json",
                    expected="valid JSON",
                )
            ]
        )
    return validate_instance(instance, schema)


def _to_violation(error: Any) -> SchemaViolation:
    path = "." + ".".join(str(p) for p in error.path) if error.path else "root"
    expected = error.schema.get(error.validator, "see schema") if isinstance(error.schema, dict) else None
    return SchemaViolation(
        path=path,
        message=error.message,
        validator=str(error.validator),
        expected=expected,
    )


def format_violations(violations: List[SchemaViolation]) -> str:
    """
    Format violations as a human-readable block.

    Example output:
        Validation failed with 2 error(s):
          1. At root: 'name' is a required property
          2. At .age: 'x' is not of type 'integer'
    """
    if not violations:
        return "No validation errors"

    lines = [f"Validation failed with {len(violations)} error(s):"]
    for i, violation in enumerate(violations, 1):
        lines.append(f"  {i}. At {violation.path}: {violation.message}")
    return "\n".join(lines)


def summarize_violations(violations: List[SchemaViolation]) -> List[Dict[str, Any]]:
    """Violations as plain dicts, for error diagnostics."""
    return [
        {"path": v.path, "message": v.message, "validator": v.validator}
        for v in violations
    ]
