"""Delivery Worker — transmits one batch and drives it to a terminal state.

Each attempt is recorded as a ``DeliveryAttempt``; the next step is an
explicit decision on that record rather than a nested retry loop:

- ``DELIVERED``                      -> batch ``DELIVERED``
- ``PERMANENT_FAILURE``              -> batch ``EXHAUSTED_FAILED``
- ``TRANSIENT_FAILURE``, retry left  -> wait until ``next_retry_at``, try again
- ``TRANSIENT_FAILURE``, no retry    -> batch ``EXHAUSTED_FAILED``

Delivery failures never raise into the caller; only a batch that is not
ready is refused.  The worker holds no shared state beyond
the batch it is borrowing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sinkrelay.core import batch_machine
from sinkrelay.core.clock import Clock, MonotonicClock
from sinkrelay.core.errors import (
    InvalidTransitionError,
    PermanentDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from sinkrelay.models.batches import (
    AttemptOutcome,
    Batch,
    BatchState,
    DeliveryAttempt,
    DeliveryResult,
)
from sinkrelay.routing.reporting import DeliveryReporter, LoggingReporter
from sinkrelay.routing.retry import RetryPolicy
from sinkrelay.routing.sinks import BaseSink, SinkRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class DeliveryWorker:
    """Delivers batches through registered sinks with retry and backoff.

    Parameters
    ----------
    sinks:
        Registry used to find the sink for a batch's destination type.
    retry_policy:
        Attempt bound and backoff schedule.
    clock:
        Time source for attempt timestamps and retry deadlines.
    sleep:
        Awaitable used to wait for a retry deadline.  Tests pass a
        function that advances a manual clock instead of waiting.
    reporter:
        Receives every terminal outcome.
    """

    def __init__(
        self,
        sinks: SinkRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        reporter: DeliveryReporter | None = None,
    ) -> None:
        self._sinks = sinks
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock or MonotonicClock()
        self._sleep = sleep or asyncio.sleep
        self._reporter = reporter or LoggingReporter()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    async def deliver(self, batch: Batch) -> DeliveryResult:
        """Transmit *batch* until it is delivered or attempts are exhausted.

        If the surrounding task is cancelled mid-delivery, the batch is
        closed as ``EXHAUSTED_FAILED`` with the attempts made so far and
        reported before the cancellation propagates.
        """
        batch_machine.transition(batch, BatchState.FLUSHING)
        sink = self._sinks.get(batch.destination_type)
        history: list[DeliveryAttempt] = []

        terminal: BatchState | None = None
        try:
            while terminal is None:
                attempt = await self._attempt(sink, batch, len(history) + 1)
                history.append(attempt)

                if attempt.outcome == AttemptOutcome.DELIVERED:
                    terminal = BatchState.DELIVERED
                elif attempt.next_retry_at is None:
                    terminal = BatchState.EXHAUSTED_FAILED
                else:
                    wait = max(attempt.next_retry_at - self._clock.now(), 0.0)
                    logger.warning(
                        "Batch %s to %s: attempt %d/%d failed (%s); retrying in %.2fs",
                        batch.id,
                        batch.destination_key,
                        attempt.attempt_number,
                        self._retry.max_attempts,
                        attempt.error,
                        wait,
                    )
                    await self._sleep(wait)
        except asyncio.CancelledError:
            logger.warning(
                "Delivery of batch %s to %s cancelled after %d attempt(s)",
                batch.id,
                batch.destination_key,
                len(history),
            )
            self._finish(batch, BatchState.EXHAUSTED_FAILED, history)
            raise

        return self._finish(batch, terminal, history)

    def abandon(self, batch: Batch, reason: str) -> DeliveryResult:
        """Close a ready batch that will never be attempted as ``EXHAUSTED_FAILED``."""
        batch_machine.transition(batch, BatchState.FLUSHING)
        logger.warning(
            "Batch %s to %s abandoned with %d record(s): %s",
            batch.id,
            batch.destination_key,
            batch.size,
            reason,
        )
        return self._finish(batch, BatchState.EXHAUSTED_FAILED, [])

    def report_discarded(self, batch: Batch) -> None:
        """Report a batch the accumulator closed as ``DISCARDED``."""
        if batch.state != BatchState.DISCARDED:
            raise InvalidTransitionError(
                f"Batch {batch.id} is {batch.state.value}, not discarded"
            )
        self._report(
            DeliveryResult(
                batch_id=batch.id,
                destination_key=batch.destination_key,
                destination_type=batch.destination_type,
                state=BatchState.DISCARDED,
                record_count=0,
                attempts=0,
            )
        )

    def _finish(
        self, batch: Batch, terminal: BatchState, history: list[DeliveryAttempt]
    ) -> DeliveryResult:
        batch_machine.transition(batch, terminal)
        result = DeliveryResult(
            batch_id=batch.id,
            destination_key=batch.destination_key,
            destination_type=batch.destination_type,
            state=terminal,
            record_count=batch.size,
            attempts=len(history),
            history=history,
        )
        self._report(result)
        # The batch is destroyed after a terminal outcome; drop its records.
        batch.records.clear()
        return result

    async def _attempt(
        self, sink: BaseSink | None, batch: Batch, attempt_number: int
    ) -> DeliveryAttempt:
        started_at = self._clock.now()
        if sink is None:
            return DeliveryAttempt(
                batch_id=batch.id,
                attempt_number=attempt_number,
                started_at=started_at,
                outcome=AttemptOutcome.PERMANENT_FAILURE,
                error=f"No sink registered for destination type {batch.destination_type.value}",
            )

        try:
            await sink.deliver(batch)
        except (PermanentDeliveryError, ValidationError) as exc:
            return DeliveryAttempt(
                batch_id=batch.id,
                attempt_number=attempt_number,
                started_at=started_at,
                outcome=AttemptOutcome.PERMANENT_FAILURE,
                error=str(exc),
            )
        except TransientDeliveryError as exc:
            return self._transient(batch, attempt_number, started_at, str(exc), exc.retry_after)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Sink %s raised unexpectedly for batch %s", sink.sink_name, batch.id)
            return self._transient(
                batch, attempt_number, started_at, f"{type(exc).__name__}: {exc}", None
            )

        return DeliveryAttempt(
            batch_id=batch.id,
            attempt_number=attempt_number,
            started_at=started_at,
            outcome=AttemptOutcome.DELIVERED,
        )

    def _transient(
        self,
        batch: Batch,
        attempt_number: int,
        started_at: float,
        error: str,
        retry_after: float | None,
    ) -> DeliveryAttempt:
        return DeliveryAttempt(
            batch_id=batch.id,
            attempt_number=attempt_number,
            started_at=started_at,
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            error=error,
            next_retry_at=self._retry.next_retry_at(
                attempt_number, self._clock.now(), retry_after
            ),
        )

    def _report(self, result: DeliveryResult) -> None:
        try:
            self._reporter.report_delivery_outcome(
                result.batch_id, result.destination_key, result.state, list(result.history)
            )
        except Exception:  # noqa: BLE001
            logger.exception("Reporting outcome of batch %s failed", result.batch_id)
