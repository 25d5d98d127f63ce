"""``sinkrelay log`` — show recent delivery outcomes from the delivery log.

The delivery log is a read-only view here; nothing is written.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from sinkrelay.config import config
from sinkrelay.core.delivery_log import DeliveryLog
from sinkrelay.models.batches import BatchState
from sinkrelay.models.outcomes import DeliveryLogQuery

console = Console()

_OUTCOME_STYLE = {
    BatchState.DELIVERED: "green",
    BatchState.EXHAUSTED_FAILED: "red",
    BatchState.DISCARDED: "yellow",
}


def log_cmd(
    destination_key: str = typer.Option(
        None,
        "--key",
        "-k",
        help="Only show outcomes for this destination key.",
    ),
    outcome: str = typer.Option(
        None,
        "--outcome",
        "-o",
        help="Only show this outcome (delivered, exhausted_failed).",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Maximum number of entries to show.",
    ),
    log_db: Path = typer.Option(
        None,
        "--log-db",
        help="Path to the delivery log database.",
    ),
) -> None:
    """Show the most recent delivery outcomes, newest first."""
    db_path = log_db or config.delivery_log_path
    if not db_path.exists():
        console.print(f"[bold red]Delivery log not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    try:
        outcome_filter = BatchState(outcome) if outcome else None
    except ValueError:
        console.print(f"[bold red]Unknown outcome:[/bold red] {outcome}")
        raise typer.Exit(code=1)

    log = DeliveryLog(db_path)
    entries = log.query(
        DeliveryLogQuery(destination_key=destination_key, outcome=outcome_filter, limit=max(limit, 1))
    )
    if not entries:
        console.print("[dim]No delivery outcomes recorded.[/dim]")
        return

    table = Table(title=f"Delivery Log ({db_path})")
    table.add_column("Recorded", style="dim")
    table.add_column("Batch", style="cyan")
    table.add_column("Destination")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")

    for entry in entries:
        style = _OUTCOME_STYLE.get(entry.outcome, "white")
        table.add_row(
            entry.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.batch_id,
            entry.destination_key,
            f"[{style}]{entry.outcome.value}[/{style}]",
            str(entry.attempts),
            entry.last_error or "-",
        )

    console.print(table)
    counts = log.count_by_outcome()
    summary = ", ".join(f"{state.value}={n}" for state, n in sorted(counts.items()))
    console.print(f"[dim]Totals: {summary}[/dim]")
