"""``sinkrelay policies`` — show the default batching policy per destination type."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from sinkrelay.models.batches import DEFAULT_POLICIES

console = Console()


def policies_cmd() -> None:
    """Print one row per destination type with its batching thresholds."""
    table = Table(title="Batching Policies")
    table.add_column("Destination", style="cyan")
    table.add_column("Mode")
    table.add_column("Max batch size", justify="right")
    table.add_column("Max wait (ms)", justify="right")
    table.add_column("Detached", justify="center")

    for dtype, policy in DEFAULT_POLICIES.items():
        mode = "[green]batched[/green]" if not policy.is_immediate else "immediate"
        table.add_row(
            dtype.value,
            mode,
            str(policy.max_batch_size),
            str(policy.max_wait_time_ms) if not policy.is_immediate else "-",
            "Yes" if policy.detached else "No",
        )

    console.print(table)
