"""``sinkrelay send TYPE`` — send one event and wait for its delivery outcome.

The destination config and payload are given as JSON strings.  The event
is enqueued under a throwaway execution id, the execution is completed
straight away (flushing the batch regardless of its thresholds) and the
command waits for the terminal outcome.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from sinkrelay.config import RelayConfig, config
from sinkrelay.core.errors import BufferPressureError, ValidationError
from sinkrelay.core.service import DeliveryService, build_default_reporter
from sinkrelay.models.batches import BatchState
from sinkrelay.models.outcomes import DeliveryLogEntry
from sinkrelay.routing.reporting import CompositeReporter, RecordingReporter

console = Console()


def parse_json(value: str | None, *, field: str) -> Any:
    """Parse a JSON option value.

    Empty or whitespace-only strings mean "not given" and return None.

    Raises
    ------
    ValidationError
        If *value* is not valid JSON.
    """
    if value is None or not value.strip():
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{field} must be valid JSON: {exc.msg} (position {exc.pos})") from exc


def settings_with(
    object_store: Path | None = None,
    tabular_path: Path | None = None,
    log_db: Path | None = None,
) -> RelayConfig:
    """Return the global settings with any CLI path overrides applied."""
    update: dict[str, Any] = {}
    if object_store is not None:
        update["object_store_path"] = object_store
    if tabular_path is not None:
        update["tabular_path"] = tabular_path
    if log_db is not None:
        update["delivery_log_path"] = log_db
    return config.model_copy(update=update)


async def _send_and_wait(
    settings: RelayConfig,
    execution_id: str,
    destination_type: str,
    destination_config: dict[str, Any],
    payload: Any,
    policy: dict[str, Any] | None,
) -> tuple[str, list[DeliveryLogEntry]]:
    recorder = RecordingReporter()
    service = DeliveryService(
        settings=settings,
        reporter=CompositeReporter([build_default_reporter(settings), recorder]),
    )
    async with service:
        record_id = service.send(
            execution_id, destination_type, destination_config, payload, policy=policy
        )
        service.on_execution_complete(execution_id)
    return record_id, recorder.entries


def send_cmd(
    destination_type: str = typer.Argument(
        ...,
        help="Destination type (http, object-storage, email, push-channel, re-emit, tabular).",
    ),
    destination_config: str = typer.Option(
        ...,
        "--config",
        "-c",
        help="Destination config as a JSON object.",
    ),
    payload: str = typer.Option(
        "",
        "--payload",
        "-p",
        help="Event payload as JSON (empty sends null).",
    ),
    execution_id: str = typer.Option(
        None,
        "--execution",
        "-e",
        help="Execution id to send under (random if omitted).",
    ),
    max_batch_size: int = typer.Option(
        None,
        "--max-batch-size",
        help="Per-call batch size override.",
    ),
    max_wait_ms: int = typer.Option(
        None,
        "--max-wait-ms",
        help="Per-call batch wait override in milliseconds.",
    ),
    object_store: Path = typer.Option(
        None,
        "--object-store",
        help="Directory of the filesystem object store.",
    ),
    tabular_path: Path = typer.Option(
        None,
        "--tables",
        help="Directory of the tabular sink databases.",
    ),
    log_db: Path = typer.Option(
        None,
        "--log-db",
        help="Path to the delivery log database.",
    ),
) -> None:
    """Send one event and report whether it was delivered."""
    execution_id = execution_id or f"cli-{uuid.uuid4().hex[:8]}"
    policy: dict[str, Any] | None = None
    if max_batch_size is not None or max_wait_ms is not None:
        policy = {"maxBatchSize": max_batch_size, "maxWaitTimeMs": max_wait_ms}

    try:
        parsed_config = parse_json(destination_config, field="--config")
        if not isinstance(parsed_config, dict):
            raise ValidationError("--config must be a JSON object")
        parsed_payload = parse_json(payload, field="--payload")
        record_id, entries = asyncio.run(
            _send_and_wait(
                settings_with(object_store, tabular_path, log_db),
                execution_id,
                destination_type,
                parsed_config,
                parsed_payload,
                policy,
            )
        )
    except (ValidationError, BufferPressureError) as exc:
        console.print(f"[bold red]Rejected:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(f"[bold green]Record:[/bold green] {record_id} (execution {execution_id})")
    failed = False
    for entry in entries:
        if entry.outcome == BatchState.DELIVERED:
            console.print(
                f"  batch {entry.batch_id}: [green]delivered[/green] "
                f"after {entry.attempts} attempt(s)"
            )
        else:
            failed = True
            console.print(
                f"  batch {entry.batch_id}: [red]{entry.outcome.value}[/red] "
                f"after {entry.attempts} attempt(s): {entry.last_error}"
            )
    if failed:
        raise typer.Exit(code=2)
