"""
Main CLI entry point using Typer.

This module defines the command-line interface for pocket-llama using Typer.
It provides four commands: gbnf, validate, info and complete.
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler
from typing_extensions import Annotated

from pocket_llama.errors import LlamaError

from .commands import complete_command, gbnf_command, info_command, validate_command
from .display import console, print_error


app = typer.Typer(
    name="pocket-llama",
    help="pocket-llama - GGUF models with grammar-constrained JSON output",
    add_completion=False,
    rich_markup_mode="rich"
)


@app.command("gbnf")
def gbnf(
    schema: Annotated[
        Path,
        typer.Option("--schema", "-s", help="Path to JSON schema file", exists=True, file_okay=True, dir_okay=False)
    ],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Path to save the grammar")
    ] = None,
    show_schema: Annotated[
        bool,
        typer.Option("--show-schema", help="Display the schema")
    ] = False,
) -> None:
    """
    Compile a JSON schema to a GBNF grammar.

    Example:
        pocket-llama gbnf --schema person.json --output person.gbnf
    """
    try:
        gbnf_command(schema_path=schema, output_path=output, show_schema=show_schema)
    except LlamaError as e:
        print_error(f"Command failed: {e}")
        raise typer.Exit(code=1)


@app.command("validate")
def validate(
    json_file: Annotated[
        Path,
        typer.Option("--json", "-j", help="Path to JSON file to validate", exists=True, file_okay=True, dir_okay=False)
    ],
    schema: Annotated[
        Path,
        typer.Option("--schema", "-s", help="Path to JSON schema file", exists=True, file_okay=True, dir_okay=False)
    ],
    show_schema: Annotated[
        bool,
        typer.Option("--show-schema", help="Display the schema")
    ] = False,
) -> None:
    """
    Validate a JSON document against a schema and its compiled grammar.

    Example:
        pocket-llama validate --json output.json --schema schema.json
    """
    try:
        ok = validate_command(json_path=json_file, schema_path=schema, show_schema=show_schema)
    except LlamaError as e:
        print_error(f"Command failed: {e}")
        raise typer.Exit(code=1)

    if not ok:
        raise typer.Exit(code=1)


@app.command("info")
def info(
    model: Annotated[
        Path,
        typer.Option("--model", "-m", help="Path to GGUF model file", exists=True, file_okay=True, dir_okay=False)
    ],
) -> None:
    """
    Show model metadata.

    Example:
        pocket-llama info --model models/qwen2.5-0.5b-instruct-q4_k_m.gguf
    """
    try:
        info_command(model_path=model)
    except LlamaError as e:
        print_error(f"Command failed: {e}")
        raise typer.Exit(code=1)


@app.command("complete")
def complete(
    model: Annotated[
        Path,
        typer.Option("--model", "-m", help="Path to GGUF model file", exists=True, file_okay=True, dir_okay=False)
    ],
    prompt: Annotated[
        str,
        typer.Option("--prompt", "-p", help="Prompt text")
    ],
    schema: Annotated[
        Optional[Path],
        typer.Option("--schema", "-s", help="JSON schema constraining the output", exists=True, file_okay=True, dir_okay=False)
    ] = None,
    max_tokens: Annotated[
        int,
        typer.Option("--max-tokens", help="Maximum tokens to generate")
    ] = 256,
    temperature: Annotated[
        float,
        typer.Option("--temperature", "-t", help="Sampling temperature")
    ] = 0.8,
    stop: Annotated[
        Optional[List[str]],
        typer.Option("--stop", help="Stop string (can be used multiple times)")
    ] = None,
    n_ctx: Annotated[
        int,
        typer.Option("--n-ctx", help="Context window in tokens")
    ] = 2048,
    n_gpu_layers: Annotated[
        int,
        typer.Option("--n-gpu-layers", help="Layers to offload to the GPU")
    ] = 0,
) -> None:
    """
    Stream a completion from a model.

    Example:
        pocket-llama complete \\
            --model models/qwen2.5-0.5b-instruct-q4_k_m.gguf \\
            --prompt "Generate a user profile for Alice, age 28" \\
            --schema person.json \\
            --max-tokens 128
    """
    try:
        complete_command(
            model_path=model,
            prompt=prompt,
            schema_path=schema,
            max_tokens=max_tokens,
            temperature=temperature,
            stop=stop,
            n_ctx=n_ctx,
            n_gpu_layers=n_gpu_layers,
        )
    except LlamaError as e:
        print_error(f"Command failed: {e}")
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option("--version", "-V", help="Show version and exit")
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
) -> None:
    """
    pocket-llama - GGUF models with grammar-constrained JSON output.
    """
    if version:
        from pocket_llama import __version__
        typer.echo(f"pocket-llama version {__version__}")
        raise typer.Exit()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def cli() -> None:
    """CLI entry point for poetry script."""
    app()


if __name__ == "__main__":
    cli()
