"""Main Typer application — imports and registers all CLI commands.

Entry point: ``sinkrelay`` (configured via pyproject.toml scripts).

Commands: policies, send, log, demo.
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from sinkrelay.cli.commands.demo import demo_cmd
from sinkrelay.cli.commands.log_cmd import log_cmd
from sinkrelay.cli.commands.policies import policies_cmd
from sinkrelay.cli.commands.send import send_cmd
from sinkrelay.config import config

app = typer.Typer(
    name="sinkrelay",
    help="sinkrelay: batched, retried delivery of workflow events.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="policies", help="Show the batching policy per destination type.")(policies_cmd)
app.command(name="send", help="Send one event and wait for its delivery outcome.")(send_cmd)
app.command(name="log", help="Show recent delivery outcomes.")(log_cmd)
app.command(name="demo", help="Run a local demo with synthetic events.")(demo_cmd)


@app.callback()
def _configure(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to SINKRELAY_LOG_LEVEL).",
    ),
) -> None:
    """Install Rich logging at the requested level."""
    level = (log_level or config.log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
