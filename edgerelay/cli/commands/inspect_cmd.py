"""``edgerelay handlers`` / ``edgerelay events`` — list what discovery finds.

Both commands import a module by dotted name and print the registrations
discovery would produce for it, without connecting to anything.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from edgerelay.core.discovery import discover_module, discover_module_events

console = Console()


def _type_label(value: object) -> str:
    if value is None:
        return "-"
    return getattr(value, "__name__", None) or str(value)


def _import_or_exit(module: str, scan):
    try:
        return scan(module)
    except ImportError as exc:
        console.print(f"[bold red]Cannot import {module}:[/bold red] {exc}")
        raise typer.Exit(code=1)


def handlers_cmd(
    module: str = typer.Argument(..., help="Dotted module name to scan."),
) -> None:
    """List message handler subscriptions declared in MODULE."""
    registrations = _import_or_exit(module, discover_module)
    if not registrations:
        console.print(f"[dim]No message handlers found in {module}.[/dim]")
        return

    table = Table(title=f"Subscriptions in {module}")
    table.add_column("Connection", style="cyan")
    table.add_column("Key", style="green")
    table.add_column("Handler")
    table.add_column("Payload")
    table.add_column("Mode")
    table.add_column("On change", justify="center")
    table.add_column("Deadband", justify="right")

    for reg in registrations:
        on_change = "[green]Yes[/green]" if reg.on_change_only else "[yellow]No[/yellow]"
        table.add_row(
            reg.connection_name,
            reg.key,
            reg.handler_type.__name__,
            _type_label(reg.payload_type),
            reg.mode.value,
            on_change,
            f"{reg.deadband:g}",
        )
    console.print(table)


def events_cmd(
    module: str = typer.Argument(..., help="Dotted module name to scan."),
) -> None:
    """List event handlers declared in MODULE, in dispatch order."""
    registrations = _import_or_exit(module, discover_module_events)
    if not registrations:
        console.print(f"[dim]No event handlers found in {module}.[/dim]")
        return

    ordered = sorted(registrations, key=lambda r: (r.event_name, -r.priority))
    table = Table(title=f"Events in {module}")
    table.add_column("Event", style="cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Handler")
    table.add_column("Result")
    table.add_column("Fire & forget", justify="center")
    table.add_column("Pre-reads")

    for reg in ordered:
        reads = ", ".join(
            f"{r.result_alias}={r.connection_name}:{r.key}" for r in reg.pre_reads
        )
        table.add_row(
            reg.event_name,
            str(reg.priority),
            reg.handler_type.__name__,
            _type_label(reg.result_type),
            "[yellow]Yes[/yellow]" if reg.fire_and_forget else "No",
            reads or "[dim]none[/dim]",
        )
    console.print(table)
