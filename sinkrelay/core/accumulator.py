"""Batch Accumulator — groups records by destination key and decides readiness.

The accumulator owns the mapping ``destination_key -> open Batch``.  It is
the only structure shared between producers (many executions enqueuing
concurrently) and the dispatcher, so every mutation for a key happens
under that key's lock:

- append a record (opening a batch lazily)
- evaluate readiness (size, then deadline)
- hand a ready batch to the dispatcher and forget it

Keys never wait on each other; the registry lock is only held to find or
create a key's lock.  No method here performs I/O.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from sinkrelay.core import batch_machine
from sinkrelay.core.clock import Clock, MonotonicClock
from sinkrelay.core.errors import BufferPressureError
from sinkrelay.models.batches import Batch, BatchingPolicy, BatchState, ReadyReason
from sinkrelay.models.records import EventRecord

logger = logging.getLogger(__name__)


class BatchHandoff(Protocol):
    """Receiver of ready batches (the dispatcher)."""

    def schedule(self, batch: Batch) -> None:
        ...


class BatchAccumulator:
    """Holds open batches and hands them off once they are ready.

    Parameters
    ----------
    handoff:
        Receiver of ready batches.  May be attached later with
        :meth:`attach`.
    clock:
        Time source for ``created_at`` and deadlines.
    max_pending_records_per_key:
        Ceiling on records accepted for one key and not yet terminal
        (open, queued and in-flight batches combined).
    max_open_batches:
        Ceiling on the number of simultaneously open batches.
    """

    def __init__(
        self,
        handoff: BatchHandoff | None = None,
        *,
        clock: Clock | None = None,
        max_pending_records_per_key: int = 10_000,
        max_open_batches: int = 10_000,
    ) -> None:
        self._handoff = handoff
        self._clock = clock or MonotonicClock()
        self._max_pending = max_pending_records_per_key
        self._max_open = max_open_batches
        self._open: dict[str, Batch] = {}
        self._pending: dict[str, int] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._deadline_listeners: list[Callable[[float], None]] = []
        self._discard_listeners: list[Callable[[Batch], None]] = []

    def attach(self, handoff: BatchHandoff) -> None:
        """Set the receiver of ready batches."""
        self._handoff = handoff

    def add_deadline_listener(self, listener: Callable[[float], None]) -> None:
        """Call *listener* with the deadline whenever a timed batch opens."""
        self._deadline_listeners.append(listener)

    def add_discard_listener(self, listener: Callable[[Batch], None]) -> None:
        """Call *listener* with each batch closed as ``DISCARDED``."""
        self._discard_listeners.append(listener)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def open_batch_count(self) -> int:
        return len(self._open)

    def open_batch(self, destination_key: str) -> Batch | None:
        """Return the open batch for a key, if any."""
        return self._open.get(destination_key)

    def pending_records(self, destination_key: str) -> int:
        """Records accepted for a key that have not reached a terminal state."""
        return self._pending.get(destination_key, 0)

    def next_deadline(self) -> float | None:
        """Earliest flush deadline among open batches."""
        deadlines = [
            b.flush_deadline for b in list(self._open.values()) if b.flush_deadline is not None
        ]
        return min(deadlines) if deadlines else None

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self, destination_key: str, record: EventRecord, policy: BatchingPolicy
    ) -> Batch:
        """Add *record* to the open batch for *destination_key*.

        Opens a batch with *policy* if none is open.  Returns the batch
        the record landed in (which may already have been handed off).

        Raises
        ------
        BufferPressureError
            If the key is at its pending-record ceiling, or a new batch
            would exceed the open-batch ceiling.
        """
        if self._handoff is None:
            raise RuntimeError("BatchAccumulator has no dispatcher attached")
        with self._lock_for(destination_key):
            pending = self._pending.get(destination_key, 0)
            if pending >= self._max_pending:
                raise BufferPressureError(
                    destination_key,
                    f"Destination {destination_key} has {pending} undelivered "
                    f"records (limit {self._max_pending}); enqueue rejected",
                )

            batch = self._open.get(destination_key)
            if batch is None:
                if len(self._open) >= self._max_open:
                    raise BufferPressureError(
                        destination_key,
                        f"{len(self._open)} batches already open "
                        f"(limit {self._max_open}); enqueue rejected",
                    )
                batch = self._open_batch(destination_key, record, policy)

            batch.records.append(record)
            batch.execution_ids.add(record.execution_id)
            self._pending[destination_key] = pending + 1

            if batch.is_full():
                self._handoff_locked(batch, ReadyReason.SIZE)
            elif batch.is_expired(self._clock.now()):
                self._handoff_locked(batch, ReadyReason.DEADLINE)
            return batch

    def _open_batch(
        self, destination_key: str, record: EventRecord, policy: BatchingPolicy
    ) -> Batch:
        now = self._clock.now()
        deadline = None if policy.is_immediate else now + policy.max_wait_time_ms / 1000.0
        batch = Batch(
            destination_key=destination_key,
            destination_type=record.destination_type,
            destination_config=record.destination_config,
            policy=policy,
            created_at=now,
            flush_deadline=deadline,
        )
        self._open[destination_key] = batch
        logger.debug(
            "Opened batch %s for %s (max_size=%d, deadline=%s)",
            batch.id,
            destination_key,
            policy.max_batch_size,
            deadline,
        )
        if deadline is not None:
            for listener in self._deadline_listeners:
                listener(deadline)
        return batch

    # ------------------------------------------------------------------
    # Forced readiness
    # ------------------------------------------------------------------

    def flush_expired(self, now: float | None = None) -> list[Batch]:
        """Hand off every open batch whose deadline has elapsed."""
        now = self._clock.now() if now is None else now
        return self._flush_where(lambda b: b.is_expired(now), ReadyReason.DEADLINE)

    def force_flush_for_execution(self, execution_id: str) -> list[Batch]:
        """Hand off every open batch holding a record from *execution_id*.

        Size and time thresholds are ignored, so no record outlives the
        execution that produced it in an open batch.
        """
        flushed = self._flush_where(
            lambda b: execution_id in b.execution_ids, ReadyReason.EXECUTION_COMPLETE
        )
        if flushed:
            logger.info(
                "Execution %s complete: flushed %d open batch(es)",
                execution_id,
                len(flushed),
            )
        return flushed

    def flush_all(self) -> list[Batch]:
        """Hand off every open batch (used when draining on shutdown)."""
        return self._flush_where(lambda b: True, ReadyReason.SHUTDOWN)

    def _flush_where(
        self, predicate: Callable[[Batch], bool], reason: ReadyReason
    ) -> list[Batch]:
        flushed: list[Batch] = []
        for key, candidate in list(self._open.items()):
            if not predicate(candidate):
                continue
            with self._lock_for(key):
                batch = self._open.get(key)
                # Re-check under the lock: a concurrent append may have
                # already handed the candidate off.
                if batch is None or batch is not candidate or not predicate(batch):
                    continue
                self._handoff_locked(batch, reason)
                flushed.append(batch)
        return flushed

    def discard_for_execution(self, execution_id: str) -> int:
        """Drop a failed execution's records from detached batches.

        Records from other executions stay in place and in order.  A batch
        left empty is closed as ``DISCARDED`` and handed to the discard
        listeners once its lock is released.  Returns the number of
        records dropped.
        """
        dropped = 0
        discarded: list[Batch] = []
        for key, candidate in list(self._open.items()):
            if not candidate.policy.detached or execution_id not in candidate.execution_ids:
                continue
            with self._lock_for(key):
                batch = self._open.get(key)
                if batch is not candidate:
                    continue
                kept = [r for r in batch.records if r.execution_id != execution_id]
                removed = len(batch.records) - len(kept)
                batch.records[:] = kept
                batch.execution_ids.discard(execution_id)
                self._pending[key] = max(self._pending.get(key, 0) - removed, 0)
                dropped += removed
                if not kept:
                    batch_machine.transition(batch, BatchState.DISCARDED)
                    del self._open[key]
                    discarded.append(batch)
        for batch in discarded:
            for listener in self._discard_listeners:
                listener(batch)
        if dropped:
            logger.warning(
                "Execution %s failed: discarded %d record(s) bound for detached destinations",
                execution_id,
                dropped,
            )
        return dropped

    # ------------------------------------------------------------------
    # Completion accounting
    # ------------------------------------------------------------------

    def release(self, destination_key: str, record_count: int) -> None:
        """Account for *record_count* records of a key reaching a terminal state."""
        with self._lock_for(destination_key):
            remaining = self._pending.get(destination_key, 0) - record_count
            if remaining > 0:
                self._pending[destination_key] = remaining
            else:
                self._pending.pop(destination_key, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, destination_key: str) -> threading.Lock:
        lock = self._key_locks.get(destination_key)
        if lock is None:
            with self._registry_lock:
                lock = self._key_locks.setdefault(destination_key, threading.Lock())
        return lock

    def _handoff_locked(self, batch: Batch, reason: ReadyReason) -> None:
        """Mark *batch* ready, detach it from the map and schedule it.

        Caller holds the key lock, so hand-off order per key matches
        batch creation order.
        """
        if self._handoff is None:
            raise RuntimeError("BatchAccumulator has no dispatcher attached")
        batch_machine.mark_ready(batch, reason)
        del self._open[batch.destination_key]
        self._handoff.schedule(batch)
