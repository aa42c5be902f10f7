"""
CLI command implementations.

This module contains the business logic for each CLI command:
- gbnf: Compile a JSON schema file to a GBNF grammar
- validate: Validate a JSON file against a schema and its grammar
- info: Show GGUF model information
- complete: Stream a completion from a model

Commands raise LlamaError subclasses; main.py turns them into exit code 1.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pocket_llama.errors import ParseError, ValidationError

from .display import (
    console,
    create_progress_spinner,
    print_completion_stats,
    print_grammar,
    print_header,
    print_info,
    print_json,
    print_model_info,
    print_separator,
    print_success,
    print_violations,
    print_warning,
)


def load_schema_file(schema_path: Path) -> Dict:
    """
    Load and parse a JSON schema file.

    Args:
        schema_path: Path to schema JSON file

    Returns:
        Parsed schema dictionary

    Raises:
        ValidationError: If the file doesn't exist
        ParseError: If the file isn't valid JSON
    """
    if not schema_path.exists():
        raise ValidationError(f"Schema file not found: {schema_path}")

    try:
        with open(schema_path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in schema file: {e.msg} at position {e.pos}") from e


def gbnf_command(schema_path: Path, output_path: Optional[Path], show_schema: bool) -> str:
    """
    Execute the gbnf command.

    Args:
        schema_path: Path to JSON schema file
        output_path: Optional file to write the grammar to
        show_schema: Whether to display the schema

    Returns:
        str: The compiled grammar
    """
    from pocket_llama.grammar import compile_schema

    print_header("pocket-llama - JSON Schema to GBNF")

    schema = load_schema_file(schema_path)
    print_success(f"Loaded schema from: {schema_path}")
    if show_schema:
        print_json(schema, title="Schema")

    grammar = compile_schema(schema)
    rule_count = sum(1 for line in grammar.splitlines() if "::=" in line)
    print_success(f"Compiled {rule_count} rules")
    print_grammar(grammar)

    if output_path:
        output_path.write_text(grammar)
        print_success(f"Grammar saved to: {output_path}")

    return grammar


def validate_command(json_path: Path, schema_path: Path, show_schema: bool) -> bool:
    """
    Execute the validate command.

    The document is checked twice: against the full schema with jsonschema,
    and against the compiled grammar. A document can pass the grammar and
    still fail value keywords such as minimum or pattern.

    Returns:
        bool: True when both checks pass
    """
    from pocket_llama.grammar import GrammarMatcher, compile_rule_set
    from pocket_llama.validation import summarize_violations, validate_document

    print_header("pocket-llama - Validate JSON")

    schema = load_schema_file(schema_path)
    print_success(f"Loaded schema from: {schema_path}")
    if show_schema:
        print_json(schema, title="Schema")

    if not json_path.exists():
        raise ValidationError(f"JSON file not found: {json_path}")
    text = json_path.read_text()

    report = validate_document(text, schema)
    if not any(v.validator == "json" for v in report.violations):
        print_json(text.strip(), title="Input JSON")

    if report.is_valid:
        print_success("Document matches the schema")
    else:
        print_violations(summarize_violations(report.violations))

    matcher = GrammarMatcher(compile_rule_set(schema))
    grammar_ok = matcher.accepts(text.strip())
    if grammar_ok:
        print_success("Document is accepted by the compiled grammar")
    else:
        print_warning("Document is rejected by the compiled grammar")

    return report.is_valid and grammar_ok


def info_command(model_path: Path) -> Dict[str, Any]:
    """Execute the info command."""
    from pocket_llama.api import load_llama_model_info
    from pocket_llama.backends import get_device_info

    print_header("pocket-llama - Model Info")

    with create_progress_spinner() as progress:
        progress.add_task(f"Reading {model_path.name}...", total=None)
        info = load_llama_model_info(str(model_path))

    print_model_info(info)
    print_model_info(get_device_info(), title="Host")
    return info


def complete_command(
    model_path: Path,
    prompt: str,
    schema_path: Optional[Path],
    max_tokens: int,
    temperature: float,
    stop: Optional[List[str]],
    n_ctx: int,
    n_gpu_layers: int,
) -> Dict[str, Any]:
    """
    Execute the complete command.

    Args:
        model_path: GGUF model file
        prompt: Prompt text
        schema_path: Optional JSON schema constraining the output
        max_tokens: Generation limit
        temperature: Sampling temperature
        stop: Stop strings
        n_ctx: Context window
        n_gpu_layers: Layers to offload

    Returns:
        Dict: The completion result
    """
    from pocket_llama.api import init_llama

    print_header("pocket-llama - Completion")

    params: Dict[str, Any] = {
        "prompt": prompt,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if stop:
        params["stop"] = stop
    if schema_path is not None:
        params["grammar"] = load_schema_file(schema_path)
        print_success(f"Output constrained by schema: {schema_path}")

    with create_progress_spinner() as progress:
        progress.add_task(f"Loading {model_path.name}...", total=None)
        llama = init_llama({"model": str(model_path), "n_ctx": n_ctx, "n_gpu_layers": n_gpu_layers})

    with llama:
        print_success("Model loaded")
        if not llama.gpu:
            print_info(f"Running on CPU: {llama.reason_no_gpu}")
        print_separator()

        result = llama.completion(
            params, on_token=lambda chunk: console.print(chunk.text, end="", markup=False, highlight=False)
        ).to_dict()
        console.print()
        print_separator()

    print_completion_stats(result)
    return result
