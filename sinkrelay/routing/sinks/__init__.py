"""Sink protocol and registry for batch delivery.

All sinks implement the ``BaseSink`` protocol: ``sink_name`` and
``destination_type`` properties and an async ``deliver(batch)`` method.
The worker looks sinks up by destination type.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import DestinationType

logger = logging.getLogger(__name__)


@runtime_checkable
class BaseSink(Protocol):
    """Protocol that every sink must implement.

    Attributes
    ----------
    sink_name : str
        A human-readable identifier for this sink instance
        (e.g. ``"http"``, ``"object_storage"``).
    destination_type : DestinationType
        The destination type this sink transmits.
    """

    @property
    def sink_name(self) -> str:
        """Return the name of this sink."""
        ...

    @property
    def destination_type(self) -> DestinationType:
        """Return the destination type this sink handles."""
        ...

    async def deliver(self, batch: Batch) -> None:
        """Transmit every record of *batch* to the external system.

        Returns normally on success.  Raises ``TransientDeliveryError``
        for failures worth retrying and ``PermanentDeliveryError`` for
        failures that will not succeed on retry.
        """
        ...


class SinkRegistry:
    """Maps destination types to the sink that transmits them."""

    def __init__(self) -> None:
        self._sinks: dict[DestinationType, BaseSink] = {}

    def register(self, sink: BaseSink) -> None:
        """Register *sink* for its destination type, replacing any previous one."""
        previous = self._sinks.get(sink.destination_type)
        self._sinks[sink.destination_type] = sink
        if previous is not None and previous is not sink:
            logger.info(
                "Replaced %s sink %s with %s",
                sink.destination_type.value,
                previous.sink_name,
                sink.sink_name,
            )
        else:
            logger.debug("Registered sink: %s", sink.sink_name)

    def unregister(self, destination_type: DestinationType) -> None:
        """Remove the sink for a destination type, if any."""
        self._sinks.pop(destination_type, None)

    def get(self, destination_type: DestinationType) -> BaseSink | None:
        return self._sinks.get(destination_type)

    @property
    def registered_sinks(self) -> list[BaseSink]:
        """Return a copy of the registered sink list."""
        return list(self._sinks.values())

    async def aclose(self) -> None:
        """Close every sink that holds resources."""
        for sink in self._sinks.values():
            closer = getattr(sink, "aclose", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception:  # noqa: BLE001
                logger.exception("Closing sink %s failed", sink.sink_name)
