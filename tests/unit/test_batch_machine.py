"""Tests for the batch state machine."""

from __future__ import annotations

import pytest

from sinkrelay.core import batch_machine
from sinkrelay.core.errors import InvalidTransitionError
from sinkrelay.models.batches import Batch, BatchingPolicy, BatchState, ReadyReason
from sinkrelay.models.destinations import DestinationType


@pytest.fixture
def batch() -> Batch:
    return Batch(
        destination_key="http:0123456789abcdef",
        destination_type=DestinationType.HTTP,
        destination_config={"url": "https://x.test"},
        policy=BatchingPolicy(),
        created_at=0.0,
    )


class TestTransitions:
    def test_happy_path(self, batch):
        batch_machine.mark_ready(batch, ReadyReason.SIZE)
        assert batch.state == BatchState.READY
        assert batch.ready_reason == ReadyReason.SIZE
        assert batch_machine.transition(batch, BatchState.FLUSHING) == BatchState.READY
        batch_machine.transition(batch, BatchState.DELIVERED)
        assert batch_machine.is_terminal(batch)

    def test_cannot_flush_accumulating_batch(self, batch):
        with pytest.raises(InvalidTransitionError):
            batch_machine.transition(batch, BatchState.FLUSHING)

    def test_cannot_flush_twice(self, batch):
        batch_machine.mark_ready(batch, ReadyReason.SIZE)
        batch_machine.transition(batch, BatchState.FLUSHING)
        with pytest.raises(InvalidTransitionError):
            batch_machine.transition(batch, BatchState.FLUSHING)

    @pytest.mark.parametrize("terminal", [BatchState.DELIVERED, BatchState.EXHAUSTED_FAILED])
    def test_terminal_states_are_final(self, batch, terminal):
        batch_machine.mark_ready(batch, ReadyReason.DEADLINE)
        batch_machine.transition(batch, BatchState.FLUSHING)
        batch_machine.transition(batch, terminal)
        for target in BatchState:
            with pytest.raises(InvalidTransitionError):
                batch_machine.transition(batch, target)

    def test_discard_only_from_accumulating(self, batch):
        batch_machine.transition(batch, BatchState.DISCARDED)
        assert batch_machine.is_terminal(batch)

    def test_ready_batch_cannot_be_discarded(self, batch):
        batch_machine.mark_ready(batch, ReadyReason.SHUTDOWN)
        with pytest.raises(InvalidTransitionError):
            batch_machine.transition(batch, BatchState.DISCARDED)
