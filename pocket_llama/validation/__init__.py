"""
Validation layer module.

This module checks JSON values against full JSON Schemas with the jsonschema
library. The grammar compiler only enforces structure; value keywords such as
minimum or pattern are checked here.

Components:
    - validator: Draft 7 validation with collected violations and formatting

Validation Flow:
    1. Parse the document as JSON (validate_document only)
    2. Check the schema itself is valid
    3. Collect every violation, not just the first
    4. Format violations with their location in the instance

Example:
    ```python
    from pocket_llama.validation import validate_instance, format_violations

    report = validate_instance({"age": "x"}, {"properties": {"age": {"type": "integer"}}})
    print(format_violations(report.violations))
    ```
"""

from pocket_llama.validation.validator import (
    SchemaViolation,
    ValidationReport,
    format_violations,
    summarize_violations,
    validate_document,
    validate_instance,
)

__all__ = [
    "SchemaViolation",
    "ValidationReport",
    "format_violations",
    "summarize_violations",
    "validate_document",
    "validate_instance",
]
