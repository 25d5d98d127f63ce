"""Error taxonomy for the delivery subsystem.

Only ``ValidationError`` and ``BufferPressureError`` ever reach a producer.
Delivery errors are raised by sinks and contained by the worker, which
turns them into attempt outcomes and reports.
"""

from __future__ import annotations


class SinkRelayError(RuntimeError):
    """Base class for every sinkrelay error."""


class ValidationError(SinkRelayError, ValueError):
    """Raised synchronously when a payload or destination config is invalid."""


class UnknownDestinationError(ValidationError):
    """Raised when a destination type is not recognized."""


class BufferPressureError(SinkRelayError):
    """Raised when a destination key has more undelivered records than allowed.

    New enqueues for the key are rejected; records already accepted are
    kept and still delivered.
    """

    def __init__(self, destination_key: str, message: str) -> None:
        super().__init__(message)
        self.destination_key = destination_key


class InvalidTransitionError(SinkRelayError):
    """Raised when a batch is moved to a state its current state does not allow."""


class DeliveryError(SinkRelayError):
    """Base class for failures reported by a sink while transmitting a batch."""


class TransientDeliveryError(DeliveryError):
    """Network failure, throttling or a 5xx response. Retried with backoff.

    Parameters
    ----------
    retry_after:
        Minimum delay in seconds requested by the sink (e.g. an HTTP
        ``Retry-After`` header), or ``None``.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """A 4xx response or a config the sink cannot act on. Never retried."""
