"""HTTP sink — one request per batch via httpx.

Single-record batches send the payload itself as the JSON body; larger
batches (only possible with an explicit size override) send a JSON array
of payloads.  Response classification:

- ``< 400``: delivered
- ``408``, ``425``, ``429``, ``5xx``: transient (``Retry-After`` honoured)
- any other ``4xx``: permanent
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from sinkrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import DestinationType, HttpConfig, load_destination_config

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429}


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class HttpSink:
    """Delivers batches as HTTP requests.

    Parameters
    ----------
    client:
        An ``httpx.AsyncClient`` to use.  When omitted the sink creates
        one lazily and closes it in :meth:`aclose`.
    default_timeout_ms:
        Request timeout when the destination config has no ``timeoutMs``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        default_timeout_ms: int = 10_000,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._default_timeout_ms = default_timeout_ms

    @property
    def sink_name(self) -> str:
        return "http"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.HTTP

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def deliver(self, batch: Batch) -> None:
        config = load_destination_config(HttpConfig, batch.destination_config)
        body = batch.records[0].payload if batch.size == 1 else batch.payloads
        timeout = (config.timeout_ms or self._default_timeout_ms) / 1000.0
        headers = {"X-SinkRelay-Batch-Id": batch.id, **config.headers}

        try:
            response = await self._get_client().request(
                config.method,
                config.url,
                headers=headers,
                json=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"{config.method} {config.url} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"{config.method} {config.url} failed: {exc}") from exc

        status = response.status_code
        if status < 400:
            logger.debug("HttpSink: %s %s -> %d", config.method, config.url, status)
            return
        detail = f"{config.method} {config.url} returned {status}"
        if status in _TRANSIENT_STATUS or status >= 500:
            raise TransientDeliveryError(
                detail, retry_after=parse_retry_after(response.headers.get("Retry-After"))
            )
        raise PermanentDeliveryError(detail)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
