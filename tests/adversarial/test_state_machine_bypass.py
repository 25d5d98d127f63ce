"""Adversarial tests — attempts to push batches around their lifecycle.

These tests verify that:
1. A batch cannot be delivered before it is ready
2. A batch is flushed at most once, even if scheduled twice
3. Terminal states cannot be exited
4. Discarded and delivered batches cannot be revived by the accumulator
5. A forced flush always ends in a terminal state
"""

from __future__ import annotations

import pytest

from sinkrelay.core import batch_machine
from sinkrelay.core.errors import InvalidTransitionError, PermanentDeliveryError
from sinkrelay.models.batches import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Batch,
    BatchingPolicy,
    BatchState,
    ReadyReason,
)
from sinkrelay.models.destinations import DestinationType, ObjectStorageConfig
from sinkrelay.routing.retry import RetryPolicy
from sinkrelay.routing.sinks import SinkRegistry
from sinkrelay.routing.worker import DeliveryWorker

STORAGE = {"bucket": "b", "keyTemplate": "x/{batch_id}", "format": "jsonl"}


@pytest.fixture
def worker_for(clock, reporter):
    def _factory(sink) -> DeliveryWorker:
        registry = SinkRegistry()
        registry.register(sink)
        return DeliveryWorker(
            registry,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            clock=clock,
            sleep=clock.sleep,
            reporter=reporter,
        )

    return _factory


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert VALID_TRANSITIONS.get(state, set()) == set()

    def test_every_path_to_delivery_passes_through_flushing(self):
        feeding_delivered = {
            s for s, targets in VALID_TRANSITIONS.items() if BatchState.DELIVERED in targets
        }
        assert feeding_delivered == {BatchState.FLUSHING}

    def test_exhaustive_illegal_pairs_rejected(self):
        for source in BatchState:
            for target in BatchState:
                if target in VALID_TRANSITIONS.get(source, set()):
                    continue
                batch = Batch(
                    destination_key="http:0000000000000000",
                    destination_type=DestinationType.HTTP,
                    destination_config={},
                    policy=BatchingPolicy(),
                    created_at=0.0,
                    state=source,
                )
                with pytest.raises(InvalidTransitionError):
                    batch_machine.transition(batch, target)
                assert batch.state == source


class TestWorkerBypassAttempts:
    @pytest.mark.asyncio
    async def test_worker_refuses_accumulating_batch(
        self, worker_for, make_sink, make_batch
    ):
        sink = make_sink(DestinationType.HTTP)
        batch = make_batch(DestinationType.HTTP, {"url": "https://x.test"}, [1])
        with pytest.raises(InvalidTransitionError):
            await worker_for(sink).deliver(batch)
        assert sink.attempts == 0

    @pytest.mark.asyncio
    async def test_same_batch_delivered_once(self, worker_for, make_sink, make_batch, reporter):
        sink = make_sink(DestinationType.HTTP)
        worker = worker_for(sink)
        batch = make_batch(DestinationType.HTTP, {"url": "https://x.test"}, [1])
        batch_machine.mark_ready(batch, ReadyReason.SIZE)
        await worker.deliver(batch)
        with pytest.raises(InvalidTransitionError):
            await worker.deliver(batch)
        assert sink.attempts == 1
        assert len(reporter.entries) == 1

    @pytest.mark.asyncio
    async def test_exhausted_batch_cannot_be_retried(self, worker_for, make_sink, make_batch):
        sink = make_sink(DestinationType.HTTP)
        sink.failures = [PermanentDeliveryError("gone")]
        worker = worker_for(sink)
        batch = make_batch(DestinationType.HTTP, {"url": "https://x.test"}, [1])
        batch_machine.mark_ready(batch, ReadyReason.SIZE)
        result = await worker.deliver(batch)
        assert result.state == BatchState.EXHAUSTED_FAILED
        assert batch.records == []
        for target in (BatchState.READY, BatchState.FLUSHING, BatchState.DELIVERED):
            with pytest.raises(InvalidTransitionError):
                batch_machine.transition(batch, target)
        assert sink.attempts == 1


class TestAccumulatorBypassAttempts:
    def test_flushed_batch_is_not_appended_to(self, accumulator, handoff, make_record, batched):
        policy = batched(2)
        accumulator.append("k", make_record(payload=1), policy)
        accumulator.append("k", make_record(payload=2), policy)
        first = handoff.batches[0]
        accumulator.append("k", make_record(payload=3), policy)
        assert first.payloads == [1, 2]
        assert accumulator.open_batch("k").payloads == [3]

    def test_discarded_batch_is_never_handed_off(
        self, accumulator, handoff, make_record, batched
    ):
        accumulator.append("k", make_record(payload=1), batched(10, detached=True))
        assert accumulator.discard_for_execution("exec-001") == 1
        assert accumulator.flush_all() == []
        assert accumulator.force_flush_for_execution("exec-001") == []
        assert handoff.batches == []

    def test_repeated_force_flush_is_idempotent(self, accumulator, handoff, make_record, batched):
        accumulator.append("k", make_record(payload=1), batched(10))
        assert len(accumulator.force_flush_for_execution("exec-001")) == 1
        assert accumulator.force_flush_for_execution("exec-001") == []
        assert len(handoff.batches) == 1
        assert handoff.batches[0].ready_reason == ReadyReason.EXECUTION_COMPLETE

    def test_early_flush_expired_does_nothing(self, accumulator, clock, make_record, batched):
        accumulator.append("k", make_record(payload=1), batched(10, wait_ms=5_000))
        assert accumulator.flush_expired(now=clock.now() + 4.999) == []
        assert accumulator.open_batch_count == 1


class TestForcedFlushTerminates:
    @pytest.mark.asyncio
    async def test_force_flush_reaches_terminal_state(self, make_service, make_sink):
        good = make_sink(DestinationType.OBJECT_STORAGE)
        async with make_service(good) as service:
            service.send("exec-1", "object-storage", STORAGE, 1)
            key = ObjectStorageConfig.model_validate(STORAGE).destination_key()
            batch = service.accumulator.open_batch(key)
            assert batch is not None
            service.on_execution_complete("exec-1")
            await service.wait_idle()
            assert batch_machine.is_terminal(batch)
            assert batch.state == BatchState.DELIVERED

    @pytest.mark.asyncio
    async def test_force_flush_with_failing_sink_still_terminates(
        self, make_service, make_sink, reporter
    ):
        bad = make_sink(DestinationType.OBJECT_STORAGE)
        bad.failures = [PermanentDeliveryError("bucket missing")]
        async with make_service(bad) as service:
            service.send("exec-1", "object-storage", STORAGE, 1)
            service.on_execution_complete("exec-1")
            await service.wait_idle()
        assert [e.outcome for e in reporter.entries] == [BatchState.EXHAUSTED_FAILED]
