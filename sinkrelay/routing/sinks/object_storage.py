"""Object-storage sink — one object write per flushed batch.

Records are serialized in enqueue order as JSON Lines (one record per
line) or as a single JSON array, and written under a key rendered from
the destination's ``keyTemplate``.

The default ``FilesystemObjectStore`` lays objects out as
``{base_path}/{bucket}/{key}`` and writes them atomically.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from sinkrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import (
    DestinationType,
    ObjectStorageConfig,
    load_destination_config,
)

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "json": "application/json",
    "jsonl": "application/x-ndjson",
}


@runtime_checkable
class ObjectStore(Protocol):
    """Blocking object-store client.  Called from a worker thread."""

    def put_object(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        ...


class FilesystemObjectStore:
    """Stores objects as files under a base directory.

    Parameters
    ----------
    base_path:
        Root directory.  Defaults to ``.sinkrelay/objects``.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base = Path(base_path) if base_path else Path(".sinkrelay/objects")

    @property
    def base_path(self) -> Path:
        return self._base

    def object_path(self, bucket: str, key: str) -> Path:
        """Resolve the file for *bucket*/*key*, refusing keys that escape the bucket."""
        bucket_dir = (self._base / bucket).resolve()
        target = (bucket_dir / key).resolve()
        if bucket_dir != target and bucket_dir not in target.parents:
            raise ValueError(f"Object key {key!r} escapes bucket {bucket!r}")
        return target

    def put_object(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        target = self.object_path(bucket, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp.write_bytes(body)
        os.replace(tmp, target)
        logger.debug("FilesystemObjectStore: wrote %d bytes to %s", len(body), target)

    def list_objects(self, bucket: str) -> list[Path]:
        """List all objects in a bucket, sorted by path."""
        bucket_dir = self._base / bucket
        if not bucket_dir.exists():
            return []
        return sorted(p for p in bucket_dir.rglob("*") if p.is_file() and not p.name.startswith("."))

    def read_object(self, bucket: str, key: str) -> bytes:
        return self.object_path(bucket, key).read_bytes()


def render_object_key(config: ObjectStorageConfig, batch: Batch) -> str:
    """Render the key template for *batch*.

    Placeholders: ``{batch_id}``, ``{date}`` (YYYY-MM-DD), ``{timestamp}``
    (UTC, compact ISO), ``{execution_id}`` (first record) and ``{uuid}``.
    """
    first = batch.records[0]
    stamp = first.enqueued_at.astimezone(timezone.utc)
    return config.key_template.format(
        batch_id=batch.id,
        date=stamp.strftime("%Y-%m-%d"),
        timestamp=stamp.strftime("%Y%m%dT%H%M%S%fZ"),
        execution_id=first.execution_id,
        uuid=uuid.uuid4().hex,
    )


def encode_batch(batch: Batch, fmt: str) -> bytes:
    """Serialize the batch's records in order."""
    rows = [record.wire_dict() for record in batch.records]
    if fmt == "json":
        return json.dumps(rows, ensure_ascii=False).encode("utf-8")
    return "".join(json.dumps(row, ensure_ascii=False) + "\n" for row in rows).encode("utf-8")


class ObjectStorageSink:
    """Writes each batch as one object.

    Parameters
    ----------
    store:
        The object store to write into.  Defaults to a
        ``FilesystemObjectStore`` at ``.sinkrelay/objects``.
    """

    def __init__(self, store: ObjectStore | None = None) -> None:
        self._store = store or FilesystemObjectStore()

    @property
    def sink_name(self) -> str:
        return "object_storage"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.OBJECT_STORAGE

    @property
    def store(self) -> ObjectStore:
        return self._store

    async def deliver(self, batch: Batch) -> None:
        config = load_destination_config(ObjectStorageConfig, batch.destination_config)
        key = render_object_key(config, batch)
        body = encode_batch(batch, config.format)

        try:
            await asyncio.to_thread(
                self._store.put_object, config.bucket, key, body, _CONTENT_TYPES[config.format]
            )
        except ValueError as exc:
            raise PermanentDeliveryError(f"Cannot write {config.bucket}/{key}: {exc}") from exc
        except OSError as exc:
            raise TransientDeliveryError(f"Writing {config.bucket}/{key} failed: {exc}") from exc

        logger.info(
            "ObjectStorageSink: wrote %d record(s) to %s/%s", batch.size, config.bucket, key
        )
