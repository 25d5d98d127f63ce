"""Tests for the emission buffer — validation and record creation at enqueue time."""

from __future__ import annotations

import pytest

from sinkrelay.core.emission_buffer import EmissionBuffer
from sinkrelay.core.errors import UnknownDestinationError, ValidationError
from sinkrelay.models.batches import BatchingPolicy, DeliveryMode
from sinkrelay.models.destinations import DestinationType, HttpConfig, ObjectStorageConfig

HTTP_CONFIG = {"method": "POST", "url": "https://example.test/hook"}
STORAGE_CONFIG = {"bucket": "events", "keyTemplate": "raw/{batch_id}.jsonl", "format": "jsonl"}


@pytest.fixture
def buffer(accumulator) -> EmissionBuffer:
    return EmissionBuffer(accumulator)


class TestEnqueue:
    def test_returns_record_with_fields(self, buffer):
        record = buffer.enqueue("exec-1", "http", HTTP_CONFIG, {"hello": "world"})
        assert record.execution_id == "exec-1"
        assert record.destination_type == DestinationType.HTTP
        assert record.payload == {"hello": "world"}
        assert record.destination_config["url"] == "https://example.test/hook"

    def test_immediate_destination_is_handed_off_at_once(self, buffer, handoff):
        buffer.enqueue("exec-1", "http", HTTP_CONFIG, {"n": 1})
        assert len(handoff.batches) == 1

    def test_batched_destination_accumulates(self, buffer, handoff, accumulator):
        record = buffer.enqueue("exec-1", "object-storage", STORAGE_CONFIG, {"n": 1})
        assert handoff.batches == []
        key = ObjectStorageConfig.model_validate(STORAGE_CONFIG).destination_key()
        assert accumulator.open_batch(key).records == [record]

    def test_payload_is_snapshotted(self, buffer, handoff):
        payload = {"items": [1]}
        buffer.enqueue("exec-1", "http", HTTP_CONFIG, payload)
        payload["items"].append(2)
        assert handoff.batches[0].payloads == [{"items": [1]}]

    def test_accepts_config_model(self, buffer, handoff):
        buffer.enqueue("exec-1", DestinationType.HTTP, HttpConfig(url="https://x.test"), 1)
        assert handoff.batches[0].destination_config["url"] == "https://x.test"

    def test_same_identity_shares_a_batch(self, buffer, accumulator):
        buffer.enqueue("exec-1", "object-storage", STORAGE_CONFIG, 1)
        buffer.enqueue("exec-2", "object-storage", dict(STORAGE_CONFIG), 2)
        assert accumulator.open_batch_count == 1


class TestValidation:
    def test_rejects_empty_execution_id(self, buffer):
        with pytest.raises(ValidationError, match="execution_id"):
            buffer.enqueue("", "http", HTTP_CONFIG, {})

    def test_rejects_unknown_type(self, buffer):
        with pytest.raises(UnknownDestinationError):
            buffer.enqueue("exec-1", "fax", {}, {})

    def test_rejects_incomplete_config(self, buffer):
        with pytest.raises(ValidationError, match="bucket"):
            buffer.enqueue("exec-1", "object-storage", {"keyTemplate": "x"}, {})

    def test_rejects_unserializable_payload(self, buffer, accumulator, handoff):
        with pytest.raises(ValidationError, match="not serializable"):
            buffer.enqueue("exec-1", "http", HTTP_CONFIG, {"callback": print})
        assert handoff.batches == []
        assert accumulator.open_batch_count == 0

    def test_rejects_bad_overrides(self, buffer):
        with pytest.raises(ValidationError, match="overrides"):
            buffer.enqueue("exec-1", "http", HTTP_CONFIG, {}, {"maxBatchSize": 0})


class TestPolicies:
    def test_default_policy_lookup(self, buffer):
        policy = buffer.policy_for("object-storage")
        assert policy.max_batch_size == 1000

    def test_configured_policy_overrides_default(self, accumulator):
        custom = BatchingPolicy(
            max_batch_size=5, max_wait_time_ms=100, delivery_mode=DeliveryMode.BATCHED
        )
        buffer = EmissionBuffer(accumulator, {DestinationType.HTTP: custom})
        assert buffer.policy_for(DestinationType.HTTP) is custom
        assert buffer.policy_for(DestinationType.EMAIL).is_immediate

    def test_per_call_override_batches_http(self, buffer, handoff, accumulator):
        for i in range(2):
            buffer.enqueue("exec-1", "http", HTTP_CONFIG, i, {"maxBatchSize": 3})
        assert handoff.batches == []
        buffer.enqueue("exec-1", "http", HTTP_CONFIG, 2, {"maxBatchSize": 3})
        assert handoff.batches[0].payloads == [0, 1, 2]

    def test_per_call_size_one_forces_immediate(self, buffer, handoff):
        buffer.enqueue("exec-1", "object-storage", STORAGE_CONFIG, 1, {"maxBatchSize": 1})
        assert len(handoff.batches) == 1
