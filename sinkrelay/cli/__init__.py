"""sinkrelay CLI — Typer-based command-line interface.

Provides the ``sinkrelay`` command with subcommands for inspecting
batching policies, sending a one-off event, browsing the delivery log
and running a local demo.

All output uses Rich for formatted terminal display.
"""
