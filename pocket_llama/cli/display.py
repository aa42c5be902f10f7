"""
Rich terminal display utilities for the CLI.

Provides formatted output using the Rich library for:
- Syntax-highlighted JSON and GBNF grammars
- Error messages with context
- Model information and completion statistics tables
- Progress spinners while a model loads
"""

import json
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text


console = Console()


def print_header(title: str) -> None:
    """Print a formatted header."""
    console.print()
    console.print(f"[bold cyan]{title}[/bold cyan]")
    console.print("=" * len(title))
    console.print()


def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message with X mark."""
    console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def print_json(data: Any, title: Optional[str] = None) -> None:
    """
    Print JSON data with syntax highlighting.

    Args:
        data: JSON-serializable data or JSON string
        title: Optional title for the panel
    """
    json_str = data if isinstance(data, str) else json.dumps(data, indent=2)
    syntax = Syntax(json_str, "json", theme="monokai", line_numbers=False)

    if title:
        console.print(Panel(syntax, title=f"[bold]{title}[/bold]", border_style="cyan"))
    else:
        console.print(syntax)


def print_grammar(grammar: str, title: str = "GBNF Grammar") -> None:
    """Print a grammar in a panel; EBNF highlighting is close enough for GBNF."""
    syntax = Syntax(grammar.rstrip("\n"), "ebnf", theme="monokai", line_numbers=False)
    console.print(Panel(syntax, title=f"[bold]{title}[/bold]", border_style="cyan"))


def print_violations(violations: List[Dict[str, Any]]) -> None:
    """
    Print schema violations in a formatted list.

    Args:
        violations: Dicts with "path" and "message" keys
    """
    if not violations:
        return

    console.print()
    console.print("[bold red]Validation Errors:[/bold red]")
    for violation in violations:
        console.print(f"  [red]•[/red] At {violation['path']}: {violation['message']}")
    console.print()


def print_model_info(info: Dict[str, Any], title: str = "Model Information") -> None:
    """Print load_llama_model_info() output as a table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Property", style="cyan", width=20)
    table.add_column("Value", style="white", width=40)

    for key, value in info.items():
        if key == "size" and isinstance(value, int):
            value = f"{value / (1024 ** 3):.2f} GiB ({value} bytes)"
        elif key == "n_params" and isinstance(value, int):
            value = f"{value / 1e9:.2f}B ({value})"
        elif isinstance(value, bool):
            value = Text("yes", style="green") if value else Text("no", style="yellow")
        table.add_row(key, value if isinstance(value, Text) else str(value))

    console.print()
    console.print(table)
    console.print()


def print_completion_stats(result: Dict[str, Any]) -> None:
    """
    Print completion statistics in a table.

    Args:
        result: LlamaCompletionResult.to_dict() output
    """
    timings = result["timings"]
    table = Table(title="Completion Statistics", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan", width=20)
    table.add_column("Value", style="white", width=30)

    table.add_row("Finish Reason", result["finish_reason"])
    if result["stopping_word"]:
        table.add_row("Stop String", repr(result["stopping_word"]))
    table.add_row("Prompt Tokens", str(result["tokens_evaluated"]))
    table.add_row("Generated Tokens", str(result["tokens_predicted"]))
    table.add_row("Prompt Time", f"{timings['prompt_ms']:.0f} ms")
    table.add_row("Generation Time", f"{timings['predicted_ms']:.0f} ms")
    table.add_row("Speed", f"{timings['predicted_per_second']:.1f} tokens/s")
    if result["truncated"]:
        table.add_row("Truncated", "context window full", style="yellow")

    console.print()
    console.print(table)
    console.print()


def create_progress_spinner(message: str = "Loading...") -> Progress:
    """
    Create a progress spinner for long-running operations.

    Returns:
        Progress context manager
    """
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    )


def print_separator() -> None:
    console.print("[dim]" + "─" * 70 + "[/dim]")
