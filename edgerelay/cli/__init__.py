"""edgerelay CLI — Typer-based command-line interface.

Provides the ``edgerelay`` command with subcommands for inspecting handler
modules, checking topic patterns, showing configuration and running a
simulated demo.

All output uses Rich for formatted terminal display.
"""
