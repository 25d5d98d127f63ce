"""Push-channel sink — low-latency fan-out to in-process subscribers.

A ``ChannelHub`` keeps one bounded ``asyncio.Queue`` per subscriber.
Publishing checks every subscriber queue for room first, so a message is
either offered to all current subscribers or to none; a full queue is
reported as throttling and retried.  Publishing to a channel with no
subscribers succeeds (there is nobody to miss it).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sinkrelay.core.errors import TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import (
    DestinationType,
    PushChannelConfig,
    load_destination_config,
)

logger = logging.getLogger(__name__)


class PushMessage(BaseModel):
    """A server-push event as seen by channel subscribers."""

    model_config = ConfigDict(frozen=True)

    id: str
    channel_id: str
    event: str
    data: Any = None
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelFullError(RuntimeError):
    """Raised when a subscriber queue has no room for a message."""


class ChannelHub:
    """In-process registry of push-channel subscribers.

    Parameters
    ----------
    max_queue_size:
        Capacity of each subscriber queue.
    """

    def __init__(self, max_queue_size: int = 1_000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue[PushMessage]]] = {}

    def subscribe(self, channel_id: str) -> asyncio.Queue[PushMessage]:
        """Return a new queue receiving every message published on *channel_id*."""
        queue: asyncio.Queue[PushMessage] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(channel_id, []).append(queue)
        return queue

    def unsubscribe(self, channel_id: str, queue: asyncio.Queue[PushMessage]) -> None:
        queues = self._subscribers.get(channel_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(channel_id, None)

    def subscriber_count(self, channel_id: str) -> int:
        return len(self._subscribers.get(channel_id, []))

    def publish(self, messages: list[PushMessage]) -> int:
        """Offer *messages* (all for one channel) to every subscriber, in order.

        Returns the number of subscribers reached.

        Raises
        ------
        ChannelFullError
            If any subscriber lacks room for all messages; nothing is
            enqueued in that case.
        """
        if not messages:
            return 0
        channel_id = messages[0].channel_id
        queues = list(self._subscribers.get(channel_id, []))
        for queue in queues:
            if queue.maxsize and queue.maxsize - queue.qsize() < len(messages):
                raise ChannelFullError(f"subscriber queue on channel {channel_id!r} is full")
        for queue in queues:
            for message in messages:
                queue.put_nowait(message)
        return len(queues)


class PushChannelSink:
    """Delivers batches to a ``ChannelHub``."""

    def __init__(self, hub: ChannelHub | None = None) -> None:
        self._hub = hub or ChannelHub()

    @property
    def sink_name(self) -> str:
        return "push_channel"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.PUSH_CHANNEL

    @property
    def hub(self) -> ChannelHub:
        return self._hub

    async def deliver(self, batch: Batch) -> None:
        config = load_destination_config(PushChannelConfig, batch.destination_config)
        messages = [
            PushMessage(
                id=record.id,
                channel_id=config.channel_id,
                event=config.event_name,
                data=record.payload,
            )
            for record in batch.records
        ]
        try:
            reached = self._hub.publish(messages)
        except ChannelFullError as exc:
            raise TransientDeliveryError(str(exc)) from exc
        logger.debug(
            "PushChannelSink: %s/%s -> %d subscriber(s)",
            config.channel_id,
            config.event_name,
            reached,
        )
