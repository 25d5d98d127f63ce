"""Integration tests — send() through accumulator, dispatcher and worker to real sinks.

Sinks write to temp directories or to an ``httpx.MockTransport``; time is a
manual clock so retry backoff and deadlines run without real waiting.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from sinkrelay.models.batches import BatchState
from sinkrelay.models.destinations import DestinationType, ObjectStorageConfig
from sinkrelay.routing.sinks.http import HttpSink
from sinkrelay.routing.sinks.object_storage import FilesystemObjectStore
from sinkrelay.routing.sinks.tabular import TabularSink

HOOK = {"method": "POST", "url": "https://hooks.example.test/orders"}
STORAGE = {"bucket": "archive", "keyTemplate": "orders/{batch_id}.jsonl", "format": "jsonl"}


def scripted_http(*statuses: int) -> tuple[HttpSink, list[httpx.Request]]:
    """HTTP sink answering with *statuses* in turn, then 200."""
    seen: list[httpx.Request] = []
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(remaining.pop(0) if remaining else 200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSink(client), seen


async def wait_for(condition, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestHttpDelivery:
    @pytest.mark.asyncio
    async def test_three_events_three_ordered_requests(self, make_service):
        sink, seen = scripted_http()
        async with make_service(sink) as service:
            for n in range(3):
                service.send("exec-1", "http", HOOK, {"order": n})
            await service.wait_idle()
        assert [json.loads(r.content) for r in seen] == [{"order": 0}, {"order": 1}, {"order": 2}]

    @pytest.mark.asyncio
    async def test_transient_twice_then_success(self, make_service, reporter):
        sink, seen = scripted_http(503, 503)
        async with make_service(sink) as service:
            service.send("exec-1", "http", HOOK, {"order": 1})
        assert len(seen) == 3
        assert [(e.outcome, e.attempts) for e in reporter.entries] == [(BatchState.DELIVERED, 3)]

    @pytest.mark.asyncio
    async def test_permanent_failure_exhausts_after_one_attempt(self, make_service, reporter):
        sink, seen = scripted_http(400)
        async with make_service(sink) as service:
            record_id = service.send("exec-1", "http", HOOK, {"order": 1})
        assert record_id
        assert len(seen) == 1
        entry = reporter.entries[0]
        assert entry.outcome == BatchState.EXHAUSTED_FAILED
        assert entry.attempts == 1
        assert "400" in entry.last_error

    @pytest.mark.asyncio
    async def test_failing_key_does_not_block_other_key(self, make_service, reporter):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404 if request.url.path == "/broken" else 200)

        sink = HttpSink(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        broken = {"method": "POST", "url": "https://hooks.example.test/broken"}
        async with make_service(sink) as service:
            service.send("exec-1", "http", broken, 1)
            service.send("exec-1", "http", HOOK, 2)
        outcomes = sorted(e.outcome.value for e in reporter.entries)
        assert outcomes == ["delivered", "exhausted_failed"]


class TestObjectStorageDelivery:
    @pytest.mark.asyncio
    async def test_250_events_size_100_gives_three_objects(self, make_service, settings):
        async with make_service() as service:
            for n in range(250):
                service.send("exec-1", "object-storage", STORAGE, {"n": n}, policy={"maxBatchSize": 100})
            service.on_execution_complete("exec-1")

        store = FilesystemObjectStore(settings.object_store_path)
        objects = store.list_objects("archive")
        sizes = sorted(len(p.read_text().splitlines()) for p in objects)
        assert sizes == [50, 100, 100]
        payloads = sorted(
            json.loads(line)["payload"]["n"] for p in objects for line in p.read_text().splitlines()
        )
        assert payloads == list(range(250))

    @pytest.mark.asyncio
    async def test_batches_of_a_key_delivered_in_creation_order(self, make_service, make_sink):
        sink = make_sink(DestinationType.OBJECT_STORAGE)
        async with make_service(sink) as service:
            for n in range(7):
                service.send("exec-1", "object-storage", STORAGE, n, policy={"maxBatchSize": 3})
        assert sink.delivered == [[0, 1, 2], [3, 4, 5], [6]]

    @pytest.mark.asyncio
    async def test_record_after_full_batch_starts_new_batch(self, make_service, make_sink):
        sink = make_sink(DestinationType.OBJECT_STORAGE)
        service = make_service(sink)
        await service.start()
        for n in range(4):
            service.send("exec-1", "object-storage", STORAGE, n, policy={"maxBatchSize": 3})
        await service.wait_idle()
        assert sink.delivered == [[0, 1, 2]]
        key = ObjectStorageConfig.model_validate(STORAGE).destination_key()
        assert service.accumulator.open_batch(key).payloads == [3]
        await service.stop()
        assert sink.delivered == [[0, 1, 2], [3]]

    @pytest.mark.asyncio
    async def test_deadline_readiness(self, make_service, make_sink, clock):
        sink = make_sink(DestinationType.OBJECT_STORAGE)
        service = make_service(sink)
        await service.start()
        service.send(
            "exec-1",
            "object-storage",
            STORAGE,
            "late",
            policy={"maxBatchSize": 100, "maxWaitTimeMs": 5000},
        )
        clock.advance_ms(4999)
        await asyncio.sleep(0.1)
        assert sink.delivered == []
        assert service.accumulator.open_batch_count == 1

        clock.advance_ms(1)
        await wait_for(lambda: bool(sink.delivered))
        assert sink.delivered == [["late"]]
        await service.stop()


class TestCompletionHook:
    @pytest.mark.asyncio
    async def test_completion_flushes_below_thresholds(self, make_service, make_sink, reporter):
        sink = make_sink(DestinationType.OBJECT_STORAGE)
        service = make_service(sink)
        await service.start()
        service.send("exec-1", "object-storage", STORAGE, "only")
        await asyncio.sleep(0.05)
        assert sink.delivered == []

        service.on_execution_complete("exec-1")
        await service.wait_idle()
        assert sink.delivered == [["only"]]
        assert reporter.entries[0].outcome == BatchState.DELIVERED
        await service.stop()

    @pytest.mark.asyncio
    async def test_tabular_end_to_end(self, make_service, settings):
        table = {"database": "metrics", "table": "events"}
        async with make_service() as service:
            for n in range(3):
                service.send("exec-7", "tabular", table, {"n": n})
            service.on_execution_complete("exec-7")
        rows = TabularSink(settings.tabular_path).read_rows("metrics", "events")
        assert [json.loads(r["payload_json"]) for r in rows] == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert {r["execution_id"] for r in rows} == {"exec-7"}
