"""sinkrelay: batched, retried event delivery from workflow executions.

Workflow code emits events with ``DeliveryService.send()`` and returns
immediately.  Records are grouped per destination key, flushed by size,
deadline or execution completion, and delivered by sinks for HTTP,
object storage, email, push channels, re-emission and SQLite tables:
  - At-least-once delivery, ordered per destination key
  - Bounded retry with exponential backoff for transient failures
  - Terminal outcomes reported to logs and a SQLite delivery log
"""

__version__ = "0.2.0"
__description__ = "Batched, retried delivery of workflow events to external destinations"

from sinkrelay.core.errors import BufferPressureError, ValidationError
from sinkrelay.core.service import DeliveryService

__all__ = ["DeliveryService", "ValidationError", "BufferPressureError", "__version__"]
