"""``sinkrelay demo`` — run the delivery service locally with synthetic events.

Several fake executions emit events to an object-storage destination
(batched) and to a re-emit listener (immediate).  Each execution then
completes, which flushes its open batches, and the service drains on
shutdown.  Outcomes and written objects are printed at the end.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sinkrelay.cli.commands.send import settings_with
from sinkrelay.core.service import DeliveryService, build_default_reporter
from sinkrelay.models.batches import BatchState
from sinkrelay.models.outcomes import DeliveryLogEntry
from sinkrelay.routing.reporting import CompositeReporter, RecordingReporter
from sinkrelay.routing.sinks.object_storage import FilesystemObjectStore
from sinkrelay.routing.sinks.re_emit import ReEmittedEvent

console = Console()

DEMO_BUCKET = "demo-events"


async def run_demo(
    service: DeliveryService,
    executions: int,
    events: int,
    batch_size: int,
) -> list[ReEmittedEvent]:
    """Emit synthetic events from *executions* fake executions and drain."""
    audit: list[ReEmittedEvent] = []
    service.listeners.register_listener("audit", audit.append)

    storage_config = {
        "bucket": DEMO_BUCKET,
        "keyTemplate": "runs/{execution_id}/{batch_id}.jsonl",
        "format": "jsonl",
    }
    async with service:
        for n in range(executions):
            execution_id = f"demo-exec-{n + 1}"
            for i in range(events):
                service.send(
                    execution_id,
                    "object-storage",
                    storage_config,
                    {"execution": execution_id, "seq": i, "value": i * i},
                    policy={"maxBatchSize": batch_size},
                )
            service.send(
                execution_id,
                "re-emit",
                {"targetListenerId": "audit"},
                {"execution": execution_id, "events": events},
            )
            service.on_execution_complete(execution_id)
            # Let the dispatcher pick up this execution's batches.
            await asyncio.sleep(0)
    return audit


def demo_cmd(
    executions: int = typer.Option(
        3,
        "--executions",
        "-x",
        help="Number of synthetic executions.",
    ),
    events: int = typer.Option(
        25,
        "--events",
        "-n",
        help="Events per execution sent to object storage.",
    ),
    batch_size: int = typer.Option(
        10,
        "--batch-size",
        "-b",
        help="Object-storage batch size for the demo.",
    ),
    object_store: Path = typer.Option(
        Path(".sinkrelay/demo-objects"),
        "--object-store",
        help="Directory of the filesystem object store.",
    ),
    log_db: Path = typer.Option(
        Path(".sinkrelay/demo-delivery-log.db"),
        "--log-db",
        help="Path to the delivery log database (uses demo-specific default).",
    ),
) -> None:
    """Run a complete local delivery demo with synthetic data."""
    settings = settings_with(object_store=object_store, log_db=log_db)
    recorder = RecordingReporter()
    service = DeliveryService(
        settings=settings,
        reporter=CompositeReporter([build_default_reporter(settings), recorder]),
    )

    console.print()
    console.print(
        Panel(
            "[bold]sinkrelay demo[/bold]\n\n"
            f"{executions} execution(s) x {events} event(s) to object storage "
            f"(batches of {batch_size}),\nplus one re-emitted summary per execution.",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    audit = asyncio.run(run_demo(service, executions, max(events, 0), max(batch_size, 1)))
    _print_outcomes(recorder.entries)

    store = FilesystemObjectStore(settings.object_store_path)
    objects = store.list_objects(DEMO_BUCKET)
    console.print(f"\n[bold]Objects in {DEMO_BUCKET}:[/bold] {len(objects)}")
    for path in objects[-5:]:
        console.print(f"  [dim]{path}[/dim]")
    console.print(f"[bold]Re-emitted summaries:[/bold] {len(audit)}")
    console.print(f"[dim]Delivery log: {settings.delivery_log_path}[/dim]")


def _print_outcomes(entries: list[DeliveryLogEntry]) -> None:
    table = Table(title="Delivery Outcomes")
    table.add_column("Batch", style="cyan")
    table.add_column("Destination")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")

    for entry in entries:
        colour = "green" if entry.outcome == BatchState.DELIVERED else "red"
        table.add_row(
            entry.batch_id,
            entry.destination_key,
            f"[{colour}]{entry.outcome.value}[/{colour}]",
            str(entry.attempts),
        )
    console.print(table)
