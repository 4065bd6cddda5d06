"""``edgerelay match`` and ``edgerelay config`` — small diagnostic commands."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from edgerelay.config import RelayConfig
from edgerelay.core.topic_matcher import is_valid_pattern, matches

console = Console()


def match_cmd(
    pattern: str = typer.Argument(..., help="Topic pattern, may use + and # wildcards."),
    keys: list[str] = typer.Argument(..., help="One or more keys to test."),
) -> None:
    """Check which KEYS a wildcard PATTERN matches."""
    if not is_valid_pattern(pattern):
        console.print(
            f"[bold red]Invalid pattern:[/bold red] {pattern} "
            "('#' must be the last segment, '+' must fill its segment)"
        )
        raise typer.Exit(code=2)

    table = Table(title=f"Pattern {pattern}")
    table.add_column("Key", style="cyan")
    table.add_column("Match", justify="center")
    for key in keys:
        table.add_row(key, "[green]Yes[/green]" if matches(pattern, key) else "[red]No[/red]")
    console.print(table)


def config_cmd() -> None:
    """Show the effective configuration (environment and .env applied)."""
    settings = RelayConfig()
    table = Table(title="edgerelay configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Environment variable", style="dim")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value), f"EDGERELAY_{name.upper()}")
    console.print(table)
