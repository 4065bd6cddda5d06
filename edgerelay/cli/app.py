"""Main Typer application — imports and registers all CLI commands.

Entry point: ``edgerelay`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from edgerelay.cli.commands.demo import demo_cmd
from edgerelay.cli.commands.inspect_cmd import events_cmd, handlers_cmd
from edgerelay.cli.commands.tools import config_cmd, match_cmd

app = typer.Typer(
    name="edgerelay",
    help="edgerelay: handler dispatch core for industrial edge messaging.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="handlers", help="List message handler subscriptions in a module.")(handlers_cmd)
app.command(name="events", help="List event handlers in a module.")(events_cmd)
app.command(name="match", help="Test keys against a wildcard topic pattern.")(match_cmd)
app.command(name="config", help="Show the effective configuration.")(config_cmd)
app.command(name="demo", help="Run a simulated session through the dispatch core.")(demo_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
