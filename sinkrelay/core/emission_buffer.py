"""Emission Buffer — the synchronous, non-blocking entry point for producers.

``enqueue`` validates its input, builds an immutable ``EventRecord`` and
appends it to the accumulator.  It never performs I/O and never raises for
delivery reasons: the only errors a producer can see are
``ValidationError`` and ``BufferPressureError``.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from sinkrelay.core.accumulator import BatchAccumulator
from sinkrelay.core.errors import ValidationError
from sinkrelay.core.hasher import json_snapshot, serialization_problem
from sinkrelay.models.batches import DEFAULT_POLICIES, BatchingPolicy, PolicyOverrides
from sinkrelay.models.destinations import (
    DestinationConfig,
    DestinationType,
    parse_destination_config,
    parse_destination_type,
)
from sinkrelay.models.records import EventRecord

logger = logging.getLogger(__name__)


class EmissionBuffer:
    """Accepts ``enqueue`` calls from running workflow executions.

    Parameters
    ----------
    accumulator:
        Where validated records are appended.
    policies:
        Batching policy per destination type.  Types not listed fall back
        to ``DEFAULT_POLICIES``.
    """

    def __init__(
        self,
        accumulator: BatchAccumulator,
        policies: dict[DestinationType, BatchingPolicy] | None = None,
    ) -> None:
        self._accumulator = accumulator
        self._policies: dict[DestinationType, BatchingPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)

    def policy_for(self, destination_type: str | DestinationType) -> BatchingPolicy:
        """Return the configured policy for a destination type."""
        return self._policies[parse_destination_type(destination_type)]

    def enqueue(
        self,
        execution_id: str,
        destination_type: str | DestinationType,
        destination_config: dict[str, Any] | DestinationConfig,
        payload: Any,
        policy_overrides: dict[str, Any] | PolicyOverrides | None = None,
    ) -> EventRecord:
        """Validate and buffer one event.  Returns the created record.

        Raises
        ------
        ValidationError
            If the execution id is empty, the destination type is unknown,
            the config is incomplete, the overrides are invalid, or the
            payload is not JSON-serializable.
        BufferPressureError
            If the destination key is over its buffering ceiling.
        """
        if not execution_id:
            raise ValidationError("execution_id is required")

        dtype = parse_destination_type(destination_type)
        config = parse_destination_config(dtype, destination_config)

        problem = serialization_problem(payload)
        if problem is not None:
            raise ValidationError(f"Payload is not serializable: {problem}")

        policy = self._resolve_policy(dtype, policy_overrides)

        record = EventRecord(
            execution_id=execution_id,
            destination_type=dtype,
            destination_config=config.model_dump(mode="json", by_alias=True),
            payload=json_snapshot(payload),
        )
        destination_key = config.destination_key()
        self._accumulator.append(destination_key, record, policy)
        logger.debug(
            "Enqueued record %s from execution %s for %s",
            record.id,
            execution_id,
            destination_key,
        )
        return record

    def _resolve_policy(
        self,
        dtype: DestinationType,
        overrides: dict[str, Any] | PolicyOverrides | None,
    ) -> BatchingPolicy:
        base = self._policies[dtype]
        if overrides is None:
            return base
        if not isinstance(overrides, PolicyOverrides):
            try:
                overrides = PolicyOverrides.model_validate(overrides)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid batching overrides: {exc}") from exc
        return base.with_overrides(
            max_batch_size=overrides.max_batch_size,
            max_wait_time_ms=overrides.max_wait_time_ms,
        )
