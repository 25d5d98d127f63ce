"""Observability reporters for terminal delivery outcomes.

The worker calls ``report_delivery_outcome`` once per batch that reaches
a terminal state.  Reporter failures are logged by the worker and never
affect delivery.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from sinkrelay.core.delivery_log import DeliveryLog
from sinkrelay.models.batches import BatchState, DeliveryAttempt
from sinkrelay.models.outcomes import DeliveryLogEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class DeliveryReporter(Protocol):
    """External observability collaborator."""

    def report_delivery_outcome(
        self,
        batch_id: str,
        destination_key: str,
        outcome: BatchState,
        attempts: list[DeliveryAttempt],
    ) -> None:
        ...


class LoggingReporter:
    """Writes outcomes to the ``sinkrelay.routing.reporting`` logger."""

    def report_delivery_outcome(
        self,
        batch_id: str,
        destination_key: str,
        outcome: BatchState,
        attempts: list[DeliveryAttempt],
    ) -> None:
        if outcome == BatchState.DELIVERED:
            logger.info(
                "Batch %s delivered to %s after %d attempt(s)",
                batch_id,
                destination_key,
                len(attempts),
            )
        elif outcome == BatchState.DISCARDED:
            logger.warning(
                "Batch %s to %s discarded with its failed execution", batch_id, destination_key
            )
        else:
            last_error = attempts[-1].error if attempts else ""
            logger.error(
                "Batch %s to %s ended %s after %d attempt(s): %s",
                batch_id,
                destination_key,
                outcome.value,
                len(attempts),
                last_error,
            )


class DeliveryLogReporter:
    """Appends outcomes to a SQLite ``DeliveryLog``."""

    def __init__(self, log: DeliveryLog) -> None:
        self._log = log

    @property
    def log(self) -> DeliveryLog:
        return self._log

    def report_delivery_outcome(
        self,
        batch_id: str,
        destination_key: str,
        outcome: BatchState,
        attempts: list[DeliveryAttempt],
    ) -> None:
        self._log.append(
            DeliveryLogEntry(
                batch_id=batch_id,
                destination_key=destination_key,
                outcome=outcome,
                attempts=len(attempts),
                last_error=attempts[-1].error if attempts else "",
            )
        )


class CompositeReporter:
    """Fans an outcome out to several reporters.

    A failure in one reporter does not prevent the others from running.
    """

    def __init__(self, reporters: list[DeliveryReporter]) -> None:
        self._reporters = list(reporters)

    @property
    def reporters(self) -> list[DeliveryReporter]:
        return list(self._reporters)

    def report_delivery_outcome(
        self,
        batch_id: str,
        destination_key: str,
        outcome: BatchState,
        attempts: list[DeliveryAttempt],
    ) -> None:
        for reporter in self._reporters:
            try:
                reporter.report_delivery_outcome(batch_id, destination_key, outcome, attempts)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Reporter %s failed for batch %s: %s",
                    type(reporter).__name__,
                    batch_id,
                    exc,
                )


class RecordingReporter:
    """Keeps outcomes in memory, in the order they were reported."""

    def __init__(self) -> None:
        self.entries: list[DeliveryLogEntry] = []

    def report_delivery_outcome(
        self,
        batch_id: str,
        destination_key: str,
        outcome: BatchState,
        attempts: list[DeliveryAttempt],
    ) -> None:
        self.entries.append(
            DeliveryLogEntry(
                batch_id=batch_id,
                destination_key=destination_key,
                outcome=outcome,
                attempts=len(attempts),
                last_error=attempts[-1].error if attempts else "",
            )
        )
