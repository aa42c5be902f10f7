"""
Command-line interface module.

This module provides a rich terminal interface for pocket-llama using Typer and Rich.

Commands:
    - gbnf: Compile a JSON schema to a GBNF grammar
    - validate: Validate a JSON document against a schema and its grammar
    - info: Show GGUF model metadata
    - complete: Stream a (optionally schema-constrained) completion

Example Usage:
    ```bash
    pocket-llama gbnf --schema person.json

    pocket-llama validate --json person.json --schema person.schema.json

    pocket-llama --verbose complete \\
        --model models/qwen2.5-0.5b-instruct-q4_k_m.gguf \\
        --prompt "Describe Alice as JSON" \\
        --schema person.schema.json \\
        --stop "\\n\\n"
    ```
"""

from .main import app

__all__ = ["app"]
