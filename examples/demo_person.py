#!/usr/bin/env python3
"""
Demo: Person record with nested fields.

Generates a person profile constrained by a JSON schema with:
- Required fields: name, age
- Nested object: address with city (required)
- Array: hobbies

The grammar guarantees the structure; value keywords such as minimum are
checked afterwards with pocket_llama.validation.

Usage:
    python examples/demo_person.py models/qwen2.5-0.5b-instruct-q4_k_m.gguf
"""

import json
import sys

from pocket_llama import compile_schema, init_llama
from pocket_llama.validation import format_violations, validate_document


def main():
    if len(sys.argv) < 2:
        print("usage: demo_person.py MODEL.gguf")
        sys.exit(2)

    print("=" * 60)
    print("pocket-llama Demo: Person Record with Nested Fields")
    print("=" * 60)

    schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 2},
            "age": {"type": "integer", "minimum": 0, "maximum": 150},
            "address": {
                "type": "object",
                "properties": {
                    "street": {"type": "string"},
                    "city": {"type": "string"},
                },
                "required": ["city"],
            },
            "hobbies": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["name", "age"],
    }

    print("\nGrammar:")
    print(compile_schema(schema))

    with init_llama({"model": sys.argv[1], "n_ctx": 2048}) as llama:
        print(f"✓ Model loaded (gpu={llama.gpu})")

        result = llama.completion(
            {
                "messages": [
                    {"role": "system", "content": "You answer with JSON only."},
                    {"role": "user", "content": "Create a profile for Bob Smith, 42, from Boston, who likes chess."},
                ],
                "response_format": {"type": "json_schema", "json_schema": {"schema": schema}},
                "temperature": 0.2,
                "max_tokens": 200,
            },
            on_token=lambda chunk: print(chunk.text, end="", flush=True),
        )

    print("\n\n" + "=" * 60)
    print(f"finish_reason={result.finish_reason} tokens={result.tokens_predicted} "
          f"({result.timings.predicted_per_second:.1f} tok/s)")

    report = validate_document(result.text, schema)
    if report.is_valid:
        print("✓ Output is valid")
        print(json.dumps(report.instance, indent=2))
    else:
        print(format_violations(report.violations))


if __name__ == "__main__":
    main()
