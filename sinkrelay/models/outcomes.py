"""Delivery log entry model — one row per terminal batch outcome."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from sinkrelay.models.batches import BatchState


class DeliveryLogEntry(BaseModel):
    """A terminal delivery outcome as recorded in the delivery log."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    batch_id: str
    destination_key: str
    outcome: BatchState
    attempts: int
    last_error: str = ""
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class DeliveryLogQuery(BaseModel):
    """Parameters for querying the delivery log."""

    model_config = ConfigDict(frozen=True)

    destination_key: str | None = None
    outcome: BatchState | None = None
    limit: int = Field(default=50, ge=1)
