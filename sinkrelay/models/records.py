"""Event Record — the unit of data carried from a workflow to a sink.

Records are frozen Pydantic models created by the emission buffer.  The
payload has already been checked for JSON serializability by the time a
record exists.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sinkrelay.models.destinations import DestinationType


class EventRecord(BaseModel):
    """One emitted event, immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str = Field(alias="executionId")
    destination_type: DestinationType = Field(alias="destinationType")
    destination_config: dict[str, Any] = Field(alias="destinationConfig")
    payload: Any = None
    enqueued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="enqueuedAt"
    )

    def wire_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys for sinks that ship the whole record."""
        return self.model_dump(mode="json", by_alias=True)
