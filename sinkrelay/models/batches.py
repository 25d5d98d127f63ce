"""Batching policy, batch lifecycle and delivery-attempt models."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from sinkrelay.models.destinations import DestinationType
from sinkrelay.models.records import EventRecord


class DeliveryMode(str, Enum):
    IMMEDIATE = "immediate"
    BATCHED = "batched"


class BatchState(str, Enum):
    """Lifecycle of a batch.

    ``ACCUMULATING`` is the only state with arbitrary dwell time.
    ``DELIVERED``, ``EXHAUSTED_FAILED`` and ``DISCARDED`` are terminal.
    """

    ACCUMULATING = "accumulating"
    READY = "ready"
    FLUSHING = "flushing"
    DELIVERED = "delivered"
    EXHAUSTED_FAILED = "exhausted_failed"
    DISCARDED = "discarded"


# Valid state transitions — enforced by batch_machine.transition().
VALID_TRANSITIONS: dict[BatchState, set[BatchState]] = {
    BatchState.ACCUMULATING: {BatchState.READY, BatchState.DISCARDED},
    BatchState.READY: {BatchState.FLUSHING},
    BatchState.FLUSHING: {BatchState.DELIVERED, BatchState.EXHAUSTED_FAILED},
    BatchState.DELIVERED: set(),  # terminal
    BatchState.EXHAUSTED_FAILED: set(),  # terminal
    BatchState.DISCARDED: set(),  # terminal
}

TERMINAL_STATES: frozenset[BatchState] = frozenset(
    {BatchState.DELIVERED, BatchState.EXHAUSTED_FAILED, BatchState.DISCARDED}
)


class ReadyReason(str, Enum):
    """Why a batch left ``ACCUMULATING``."""

    SIZE = "size"
    DEADLINE = "deadline"
    EXECUTION_COMPLETE = "execution_complete"
    SHUTDOWN = "shutdown"


class BatchingPolicy(BaseModel):
    """Per-destination-type batching rules.

    ``immediate`` mode is the degenerate case of one record per batch and
    no wait.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_batch_size: int = Field(default=1, alias="maxBatchSize", ge=1)
    max_wait_time_ms: int = Field(default=0, alias="maxWaitTimeMs", ge=0)
    delivery_mode: DeliveryMode = Field(default=DeliveryMode.IMMEDIATE, alias="deliveryMode")
    detached: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize_immediate(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        mode = data.get("delivery_mode", data.get("deliveryMode", DeliveryMode.IMMEDIATE))
        if DeliveryMode(mode) == DeliveryMode.IMMEDIATE:
            data = {
                k: v
                for k, v in data.items()
                if k not in {"max_batch_size", "maxBatchSize", "max_wait_time_ms", "maxWaitTimeMs"}
            }
        return data

    @property
    def is_immediate(self) -> bool:
        return self.delivery_mode == DeliveryMode.IMMEDIATE

    def with_overrides(
        self,
        max_batch_size: int | None = None,
        max_wait_time_ms: int | None = None,
    ) -> BatchingPolicy:
        """Return a policy with per-call overrides applied.

        A size of 1 switches to ``immediate``; anything larger to ``batched``.
        """
        if max_batch_size is None and max_wait_time_ms is None:
            return self
        size = self.max_batch_size if max_batch_size is None else max_batch_size
        wait = self.max_wait_time_ms if max_wait_time_ms is None else max_wait_time_ms
        mode = DeliveryMode.IMMEDIATE if size == 1 else DeliveryMode.BATCHED
        return BatchingPolicy(
            max_batch_size=size,
            max_wait_time_ms=wait,
            delivery_mode=mode,
            detached=self.detached,
        )


class PolicyOverrides(BaseModel):
    """Per-call batching overrides accepted by ``send``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    max_batch_size: int | None = Field(default=None, alias="maxBatchSize", ge=1)
    max_wait_time_ms: int | None = Field(default=None, alias="maxWaitTimeMs", ge=0)


DEFAULT_POLICIES: dict[DestinationType, BatchingPolicy] = {
    DestinationType.HTTP: BatchingPolicy(),
    DestinationType.PUSH_CHANNEL: BatchingPolicy(),
    DestinationType.RE_EMIT: BatchingPolicy(),
    DestinationType.EMAIL: BatchingPolicy(),
    DestinationType.OBJECT_STORAGE: BatchingPolicy(
        max_batch_size=1000,
        max_wait_time_ms=60_000,
        delivery_mode=DeliveryMode.BATCHED,
    ),
    DestinationType.TABULAR: BatchingPolicy(
        max_batch_size=500,
        max_wait_time_ms=30_000,
        delivery_mode=DeliveryMode.BATCHED,
    ),
}


class Batch(BaseModel):
    """An ordered group of records for one destination key.

    Unlike records, a batch is mutable: records are appended while it is
    ``ACCUMULATING`` and its state moves through ``batch_machine``.  It is
    owned by the accumulator until it is ready, then borrowed by the
    dispatcher and worker for delivery.
    """

    id: str = Field(default_factory=lambda: f"batch-{uuid.uuid4().hex[:12]}")
    destination_key: str
    destination_type: DestinationType
    destination_config: dict[str, Any]
    policy: BatchingPolicy
    records: list[EventRecord] = []
    state: BatchState = BatchState.ACCUMULATING
    created_at: float
    flush_deadline: float | None = None
    ready_reason: ReadyReason | None = None
    execution_ids: set[str] = set()

    @property
    def size(self) -> int:
        return len(self.records)

    @property
    def payloads(self) -> list[Any]:
        return [record.payload for record in self.records]

    def is_full(self) -> bool:
        return len(self.records) >= self.policy.max_batch_size

    def is_expired(self, now: float) -> bool:
        return self.flush_deadline is not None and now >= self.flush_deadline


class AttemptOutcome(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class DeliveryAttempt(BaseModel):
    """One transmission of a batch to its sink."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    attempt_number: int
    started_at: float
    outcome: AttemptOutcome
    error: str = ""
    next_retry_at: float | None = None


class DeliveryResult(BaseModel):
    """Terminal result of delivering one batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    destination_key: str
    destination_type: DestinationType
    state: BatchState
    record_count: int
    attempts: int
    history: list[DeliveryAttempt] = []

    @property
    def delivered(self) -> bool:
        return self.state == BatchState.DELIVERED

    @property
    def last_error(self) -> str:
        return self.history[-1].error if self.history else ""
