"""Re-emit sink — delivers payloads as new events to another execution or listener.

Targets register handlers in a ``ListenerRegistry``.  Executions and
listeners live in separate namespaces, matching the two config fields
``targetExecutionId`` and ``targetListenerId``.  An unknown target is a
permanent failure; a handler that raises is treated as transient.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sinkrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import DestinationType, ReEmitConfig, load_destination_config

logger = logging.getLogger(__name__)


class ReEmittedEvent(BaseModel):
    """An event handed to a listener or execution."""

    model_config = ConfigDict(frozen=True)

    id: str
    source_execution_id: str
    target: str
    payload: Any = None
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


ListenerHandler = Callable[[ReEmittedEvent], Awaitable[None] | None]


class ListenerRegistry:
    """Registered re-emit targets."""

    def __init__(self) -> None:
        self._listeners: dict[str, ListenerHandler] = {}
        self._executions: dict[str, ListenerHandler] = {}

    def register_listener(self, listener_id: str, handler: ListenerHandler) -> None:
        self._listeners[listener_id] = handler

    def register_execution(self, execution_id: str, handler: ListenerHandler) -> None:
        self._executions[execution_id] = handler

    def unregister_listener(self, listener_id: str) -> None:
        self._listeners.pop(listener_id, None)

    def unregister_execution(self, execution_id: str) -> None:
        self._executions.pop(execution_id, None)

    def resolve(self, config: ReEmitConfig) -> ListenerHandler | None:
        if config.target_execution_id:
            return self._executions.get(config.target_execution_id)
        return self._listeners.get(config.target_listener_id or "")


class ReEmitSink:
    """Delivers batches to handlers in a ``ListenerRegistry``."""

    def __init__(self, registry: ListenerRegistry | None = None) -> None:
        self._registry = registry or ListenerRegistry()

    @property
    def sink_name(self) -> str:
        return "re_emit"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.RE_EMIT

    @property
    def registry(self) -> ListenerRegistry:
        return self._registry

    async def deliver(self, batch: Batch) -> None:
        config = load_destination_config(ReEmitConfig, batch.destination_config)
        handler = self._registry.resolve(config)
        if handler is None:
            raise PermanentDeliveryError(f"No re-emit target registered for {config.target!r}")

        for record in batch.records:
            event = ReEmittedEvent(
                id=record.id,
                source_execution_id=record.execution_id,
                target=config.target,
                payload=record.payload,
            )
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001
                raise TransientDeliveryError(
                    f"Re-emit target {config.target!r} failed: {exc}"
                ) from exc
        logger.debug("ReEmitSink: delivered %d event(s) to %s", batch.size, config.target)
