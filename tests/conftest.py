"""Shared test fixtures for sinkrelay."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sinkrelay.config import RelayConfig
from sinkrelay.core.accumulator import BatchAccumulator
from sinkrelay.core.clock import ManualClock
from sinkrelay.core.service import DeliveryService
from sinkrelay.models.batches import Batch, BatchingPolicy, DeliveryMode
from sinkrelay.models.destinations import DestinationType
from sinkrelay.models.records import EventRecord
from sinkrelay.routing.reporting import RecordingReporter


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def clock() -> ManualClock:
    """Provide a manual clock starting at t=1000s."""
    return ManualClock(start=1000.0)


@pytest.fixture
def settings(tmp_dir: Path) -> RelayConfig:
    """Provide settings isolated from the environment and the working directory."""
    return RelayConfig(
        _env_file=None,
        object_store_path=tmp_dir / "objects",
        tabular_path=tmp_dir / "tables",
        delivery_log_path=tmp_dir / "delivery-log.db",
        delivery_log_enabled=False,
        timer_tick_ms=20,
    )


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


# ---------------------------------------------------------------------------
# Recording sink — stands in for an external system
# ---------------------------------------------------------------------------


class RecordingSink:
    """Sink that records what it was asked to deliver.

    ``failures`` is a script of exceptions raised by successive attempts;
    once it is exhausted every attempt succeeds.  Setting ``gate`` makes
    each delivery wait for the event, which lets tests hold a batch in
    flight.
    """

    def __init__(self, destination_type: DestinationType = DestinationType.HTTP) -> None:
        self._destination_type = destination_type
        self.failures: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.attempts = 0
        self.delivered: list[list[Any]] = []
        self.batch_ids: list[str] = []
        self.active = 0
        self.max_active = 0
        self.active_keys: list[str] = []
        self.started = 0

    @property
    def sink_name(self) -> str:
        return f"recording-{self._destination_type.value}"

    @property
    def destination_type(self) -> DestinationType:
        return self._destination_type

    @property
    def payloads(self) -> list[Any]:
        return [p for batch in self.delivered for p in batch]

    async def deliver(self, batch: Batch) -> None:
        self.attempts += 1
        self.started += 1
        self.active += 1
        self.active_keys.append(batch.destination_key)
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.failures:
                raise self.failures.pop(0)
            self.delivered.append(list(batch.payloads))
            self.batch_ids.append(batch.id)
        finally:
            self.active -= 1
            self.active_keys.remove(batch.destination_key)


class CollectingHandoff:
    """Accumulator hand-off target that keeps ready batches in a list."""

    def __init__(self) -> None:
        self.batches: list[Batch] = []

    def schedule(self, batch: Batch) -> None:
        self.batches.append(batch)


@pytest.fixture
def make_sink() -> Callable[..., RecordingSink]:
    """Factory fixture: build a RecordingSink for a destination type."""

    def _factory(destination_type: DestinationType = DestinationType.HTTP) -> RecordingSink:
        return RecordingSink(destination_type)

    return _factory


@pytest.fixture
def handoff() -> CollectingHandoff:
    return CollectingHandoff()


@pytest.fixture
def accumulator(handoff: CollectingHandoff, clock: ManualClock) -> BatchAccumulator:
    """Provide an accumulator whose ready batches land in ``handoff.batches``."""
    return BatchAccumulator(handoff, clock=clock)


# ---------------------------------------------------------------------------
# Record and policy factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_record() -> Callable[..., EventRecord]:
    """Factory fixture: build an EventRecord with sensible defaults."""

    def _factory(
        execution_id: str = "exec-001",
        payload: Any = None,
        destination_type: DestinationType = DestinationType.HTTP,
        **overrides: Any,
    ) -> EventRecord:
        defaults: dict[str, Any] = {
            "execution_id": execution_id,
            "destination_type": destination_type,
            "destination_config": {"method": "POST", "url": "https://example.test/hook"},
            "payload": {"n": 1} if payload is None else payload,
        }
        defaults.update(overrides)
        return EventRecord(**defaults)

    return _factory


@pytest.fixture
def batched() -> Callable[..., BatchingPolicy]:
    """Factory fixture: build a batched policy."""

    def _factory(size: int, wait_ms: int = 60_000, *, detached: bool = False) -> BatchingPolicy:
        return BatchingPolicy(
            max_batch_size=size,
            max_wait_time_ms=wait_ms,
            delivery_mode=DeliveryMode.BATCHED,
            detached=detached,
        )

    return _factory


@pytest.fixture
def make_service(
    settings: RelayConfig, clock: ManualClock, reporter: RecordingReporter
) -> Callable[..., DeliveryService]:
    """Factory fixture: build a DeliveryService on the manual clock.

    Retry waits advance the clock instead of sleeping.
    """

    def _factory(*sinks: RecordingSink, **overrides: Any) -> DeliveryService:
        kwargs: dict[str, Any] = {
            "settings": settings,
            "sinks": list(sinks),
            "reporter": reporter,
            "clock": clock,
            "sleep": clock.sleep,
        }
        kwargs.update(overrides)
        return DeliveryService(**kwargs)

    return _factory


@pytest.fixture
def make_batch(make_record) -> Callable[..., Batch]:
    """Factory fixture: build a batch of records for one destination."""

    def _factory(
        destination_type: DestinationType,
        destination_config: dict[str, Any],
        payloads: list[Any],
        execution_id: str = "exec-001",
    ) -> Batch:
        records = [
            make_record(
                execution_id=execution_id,
                payload=payload,
                destination_type=destination_type,
                destination_config=destination_config,
            )
            for payload in payloads
        ]
        return Batch(
            destination_key=f"{destination_type.value}:test",
            destination_type=destination_type,
            destination_config=destination_config,
            policy=BatchingPolicy(),
            created_at=0.0,
            records=records,
            execution_ids={execution_id},
        )

    return _factory
