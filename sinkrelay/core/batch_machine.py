"""Batch state machine.

Every state change of a batch goes through :func:`transition`, which
enforces ``VALID_TRANSITIONS``.  A batch therefore enters ``FLUSHING``
exactly once and never leaves a terminal state.
"""

from __future__ import annotations

import logging

from sinkrelay.core.errors import InvalidTransitionError
from sinkrelay.models.batches import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Batch,
    BatchState,
    ReadyReason,
)

logger = logging.getLogger(__name__)


def transition(batch: Batch, target_state: BatchState) -> BatchState:
    """Move *batch* to *target_state*, returning the previous state.

    Raises
    ------
    InvalidTransitionError
        If the transition is not allowed from the batch's current state.
    """
    current = batch.state
    allowed = VALID_TRANSITIONS.get(current, set())
    if target_state not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition batch {batch.id} from {current.value} to "
            f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
        )
    batch.state = target_state
    logger.debug(
        "Batch %s (%s): %s -> %s",
        batch.id,
        batch.destination_key,
        current.value,
        target_state.value,
    )
    return current


def mark_ready(batch: Batch, reason: ReadyReason) -> None:
    """Transition an accumulating batch to ``READY`` and record why."""
    transition(batch, BatchState.READY)
    batch.ready_reason = reason


def is_terminal(batch: Batch) -> bool:
    return batch.state in TERMINAL_STATES
