"""DeliveryService — process-scoped wiring of the delivery subsystem.

The service owns one accumulator, emission buffer, worker and dispatcher,
plus the default sinks.  It is the surface the workflow engine talks to:

- ``send()``: fire-and-forget emission from a running execution
- ``on_execution_complete()``: the completion hook
- ``start()`` / ``stop()``: explicit lifecycle (timer up, drain on shutdown)

Tests construct isolated instances; nothing here is a module global.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sinkrelay.config import RelayConfig
from sinkrelay.core.accumulator import BatchAccumulator
from sinkrelay.core.clock import Clock, MonotonicClock
from sinkrelay.core.delivery_log import DeliveryLog
from sinkrelay.core.emission_buffer import EmissionBuffer
from sinkrelay.models.batches import BatchingPolicy, PolicyOverrides
from sinkrelay.models.destinations import DestinationConfig, DestinationType
from sinkrelay.routing.dispatcher import DeliveryDispatcher
from sinkrelay.routing.reporting import (
    CompositeReporter,
    DeliveryLogReporter,
    DeliveryReporter,
    LoggingReporter,
)
from sinkrelay.routing.retry import RetryPolicy
from sinkrelay.routing.sinks import BaseSink, SinkRegistry
from sinkrelay.routing.sinks.email import EmailSink, SmtpMailer
from sinkrelay.routing.sinks.http import HttpSink
from sinkrelay.routing.sinks.object_storage import FilesystemObjectStore, ObjectStorageSink
from sinkrelay.routing.sinks.push_channel import ChannelHub, PushChannelSink
from sinkrelay.routing.sinks.re_emit import ListenerRegistry, ReEmitSink
from sinkrelay.routing.sinks.tabular import TabularSink
from sinkrelay.routing.worker import DeliveryWorker, Sleep

logger = logging.getLogger(__name__)


def build_default_sinks(
    settings: RelayConfig, hub: ChannelHub, listeners: ListenerRegistry
) -> list[BaseSink]:
    """Create one sink per destination type from *settings*."""
    return [
        HttpSink(default_timeout_ms=settings.http_timeout_ms),
        ObjectStorageSink(FilesystemObjectStore(settings.object_store_path)),
        EmailSink(
            SmtpMailer(
                settings.smtp_host,
                settings.smtp_port,
                use_tls=settings.smtp_use_tls,
                username=settings.smtp_username,
                password=settings.smtp_password,
                timeout=settings.smtp_timeout_seconds,
            ),
            sender=settings.smtp_sender,
        ),
        PushChannelSink(hub),
        ReEmitSink(listeners),
        TabularSink(settings.tabular_path),
    ]


def build_default_reporter(settings: RelayConfig) -> DeliveryReporter:
    """Log every outcome, and persist it when the delivery log is enabled."""
    if not settings.delivery_log_enabled:
        return LoggingReporter()
    return CompositeReporter(
        [LoggingReporter(), DeliveryLogReporter(DeliveryLog(settings.delivery_log_path))]
    )


class DeliveryService:
    """Entry point for workflow executions emitting events to destinations.

    Parameters
    ----------
    settings:
        Configuration; a fresh ``RelayConfig()`` (environment-driven) if omitted.
    sinks:
        Sinks registered on top of the defaults, replacing the default
        sink for the same destination type.
    reporter:
        Observability collaborator for terminal outcomes.
    policies:
        Batching policy overrides per destination type.
    retry_policy:
        Overrides the retry policy built from *settings*.
    clock, sleep:
        Injected time source and retry wait, for tests.
    """

    def __init__(
        self,
        *,
        settings: RelayConfig | None = None,
        sinks: Iterable[BaseSink] | None = None,
        reporter: DeliveryReporter | None = None,
        policies: dict[DestinationType, BatchingPolicy] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._settings = settings or RelayConfig()
        self._clock = clock or MonotonicClock()

        self.channel_hub = ChannelHub(self._settings.push_queue_size)
        self.listeners = ListenerRegistry()
        self.sinks = SinkRegistry()
        for sink in build_default_sinks(self._settings, self.channel_hub, self.listeners):
            self.sinks.register(sink)
        for sink in sinks or []:
            self.sinks.register(sink)

        self.accumulator = BatchAccumulator(
            clock=self._clock,
            max_pending_records_per_key=self._settings.max_pending_records_per_key,
            max_open_batches=self._settings.max_open_batches,
        )
        self.worker = DeliveryWorker(
            self.sinks,
            retry_policy=retry_policy or self._settings.retry_policy(),
            clock=self._clock,
            sleep=sleep,
            reporter=reporter or build_default_reporter(self._settings),
        )
        self.dispatcher = DeliveryDispatcher(
            self.worker,
            self.accumulator,
            clock=self._clock,
            timer_tick_ms=self._settings.timer_tick_ms,
        )
        self.accumulator.add_discard_listener(self.worker.report_discarded)
        self.buffer = EmissionBuffer(self.accumulator, policies)

    @property
    def settings(self) -> RelayConfig:
        return self._settings

    def register_sink(self, sink: BaseSink) -> None:
        """Register *sink*, replacing the sink for its destination type."""
        self.sinks.register(sink)

    # ------------------------------------------------------------------
    # Producer-facing API
    # ------------------------------------------------------------------

    def send(
        self,
        execution_id: str,
        destination_type: str | DestinationType,
        config: dict[str, Any] | DestinationConfig,
        payload: Any,
        *,
        policy: dict[str, Any] | PolicyOverrides | None = None,
    ) -> str:
        """Emit *payload* to a destination.  Returns the record id.

        Returns before any network activity.  Raises only
        ``ValidationError`` (bad payload, type or config) and
        ``BufferPressureError``; delivery failures surface in outcome
        reports, never here.
        """
        record = self.buffer.enqueue(execution_id, destination_type, config, payload, policy)
        return record.id

    def on_execution_complete(self, execution_id: str, *, failed: bool = False) -> int:
        """Completion hook: flush every open batch holding the execution's records.

        When *failed* is true, the execution's records bound for detached
        (best-effort) destinations are discarded first, and a batch emptied
        that way is reported as ``discarded``; everything else is
        still delivered.  Returns the number of batches flushed.
        """
        if failed:
            self.accumulator.discard_for_execution(execution_id)
        return len(self.accumulator.force_flush_for_execution(execution_id))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop delivery; by default flush and deliver everything first."""
        await self.dispatcher.stop(drain=drain)
        await self.sinks.aclose()

    async def wait_idle(self) -> None:
        """Wait until every scheduled batch reached a terminal state."""
        await self.dispatcher.wait_idle()

    async def __aenter__(self) -> DeliveryService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
