"""DeliveryDispatcher — schedules ready batches, one in flight per destination key.

Ready batches arrive from the accumulator, possibly on producer threads.
``schedule`` only enqueues: the batch is handed to the event loop thread
with ``call_soon_threadsafe`` and placed in a FIFO queue for its key.
Each key with work has exactly one drain task, which delivers that key's
batches one at a time in arrival order.  Different keys have different
tasks and proceed independently.

The dispatcher also owns the deadline timer: a background task that
readies batches whose ``max_wait_time_ms`` elapsed, whether or not
anything else is being enqueued.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import deque

from sinkrelay.core.accumulator import BatchAccumulator
from sinkrelay.core.clock import Clock, MonotonicClock
from sinkrelay.models.batches import Batch
from sinkrelay.routing.worker import DeliveryWorker

logger = logging.getLogger(__name__)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class DeliveryDispatcher:
    """Routes ready batches to the worker with per-key single flight.

    Parameters
    ----------
    worker:
        Delivers one batch to a terminal state.
    accumulator:
        Source of ready batches.  The dispatcher attaches itself as the
        accumulator's hand-off target and listens for new deadlines.
    clock:
        Time source for deadline checks (shared with the accumulator).
    timer_tick_ms:
        Longest the deadline timer sleeps between checks.

    Usage
    -----
    >>> dispatcher = DeliveryDispatcher(worker, accumulator)
    >>> await dispatcher.start()
    >>> ...  # producers enqueue; ready batches are scheduled
    >>> await dispatcher.stop()  # flushes open batches and waits for delivery
    """

    def __init__(
        self,
        worker: DeliveryWorker,
        accumulator: BatchAccumulator,
        *,
        clock: Clock | None = None,
        timer_tick_ms: int = 1_000,
    ) -> None:
        self._worker = worker
        self._accumulator = accumulator
        self._clock = clock or MonotonicClock()
        self._tick = timer_tick_ms / 1000.0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_lock = threading.Lock()
        # (sequence, batch) pairs held while no loop is bound.
        self._backlog: list[tuple[int, Batch]] = []
        self._seq = itertools.count()
        self._in_transit = 0

        # Loop-thread state: only touched from the event loop.
        self._queues: dict[str, deque[Batch]] = {}
        self._drains: dict[str, asyncio.Task[None]] = {}
        self._timer_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._delivered = 0
        self._failed = 0

        accumulator.attach(self)
        accumulator.add_deadline_listener(self._on_deadline)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return (
            self._loop is not None
            and self._timer_task is not None
            and not self._timer_task.done()
        )

    @property
    def in_flight_keys(self) -> set[str]:
        """Destination keys with a batch currently being delivered."""
        return set(self._drains)

    @property
    def pending_count(self) -> int:
        """Ready batches not yet in flight: queued, held, or on their way to a queue."""
        queued = sum(len(q) for q in self._queues.values())
        return queued + len(self._backlog) + self._in_transit

    @property
    def delivered_count(self) -> int:
        return self._delivered

    @property
    def failed_count(self) -> int:
        return self._failed

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, batch: Batch) -> None:
        """Accept a ready batch for eventual delivery.  Never blocks.

        Safe to call from any thread.  Every batch, including one readied
        on the loop thread itself, reaches its queue through the loop's
        callback FIFO, so batches for a key keep the order they were
        readied in.  Batches scheduled while no loop is bound are held and
        admitted when the dispatcher starts.
        """
        with self._loop_lock:
            seq = next(self._seq)
            loop = self._loop
            if loop is None:
                self._backlog.append((seq, batch))
                return
            self._in_transit += 1
        try:
            loop.call_soon_threadsafe(self._receive, seq, batch)
        except RuntimeError:
            # The bound loop was closed without stopping the dispatcher.
            with self._loop_lock:
                self._in_transit -= 1
                self._backlog.append((seq, batch))
                if self._loop is loop:
                    self._loop = None
            logger.warning(
                "Event loop closed under a running dispatcher; batch %s held until restart",
                batch.id,
            )

    def _receive(self, seq: int, batch: Batch) -> None:
        with self._loop_lock:
            self._in_transit -= 1
            if self._loop is None:
                self._backlog.append((seq, batch))
                return
        self._admit(batch)

    def _admit(self, batch: Batch) -> None:
        key = batch.destination_key
        self._queues.setdefault(key, deque()).append(batch)
        self._idle.clear()
        if key not in self._drains:
            self._drains[key] = asyncio.get_running_loop().create_task(
                self._drain(key), name=f"sinkrelay-deliver:{key}"
            )

    async def _drain(self, key: str) -> None:
        """Deliver every queued batch for *key*, one at a time, in order."""
        queue = self._queues[key]
        try:
            while queue:
                batch = queue.popleft()
                record_count = batch.size
                try:
                    result = await self._worker.deliver(batch)
                except asyncio.CancelledError:
                    self._failed += 1
                    raise
                except Exception:  # noqa: BLE001
                    logger.exception("Delivery of batch %s to %s crashed", batch.id, key)
                    self._failed += 1
                else:
                    if result.delivered:
                        self._delivered += 1
                    else:
                        self._failed += 1
                finally:
                    self._accumulator.release(key, record_count)
        finally:
            self._drains.pop(key, None)
            if not queue:
                self._queues.pop(key, None)
            if not self._drains:
                self._idle.set()

    # ------------------------------------------------------------------
    # Deadline timer
    # ------------------------------------------------------------------

    def _on_deadline(self, deadline: float) -> None:
        """Wake the timer so it can shorten its sleep.  Any thread."""
        with self._loop_lock:
            loop = self._loop
        if loop is None:
            return
        if _running_loop() is loop:
            self._wake.set()
            return
        try:
            loop.call_soon_threadsafe(self._wake.set)
        except RuntimeError:
            logger.debug("Deadline wake-up dropped: event loop closed")

    async def _timer_loop(self) -> None:
        while True:
            self._wake.clear()
            now = self._clock.now()
            try:
                self._accumulator.flush_expired(now)
            except Exception:  # noqa: BLE001
                logger.exception("Deadline check failed")
            deadline = self._accumulator.next_deadline()
            timeout = self._tick
            if deadline is not None:
                timeout = min(max(deadline - now, 0.0), self._tick)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind to the running loop, admit held batches and start the timer."""
        loop = asyncio.get_running_loop()
        with self._loop_lock:
            if self._loop is not None:
                return
            self._loop = loop
            backlog, self._backlog = self._backlog, []
        backlog.sort(key=lambda item: item[0])

        # Queues left behind by a loop that closed underneath us.
        stranded = [batch for queue in self._queues.values() for batch in queue]
        self._queues.clear()
        self._drains.clear()
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

        for batch in stranded:
            self._admit(batch)
        for _, batch in backlog:
            self._admit(batch)
        self._timer_task = loop.create_task(self._timer_loop(), name="sinkrelay-deadline-timer")
        logger.info(
            "DeliveryDispatcher started (%d held batch(es) admitted)",
            len(stranded) + len(backlog),
        )

    async def wait_idle(self) -> None:
        """Wait until no batch is queued, in flight or on its way to a queue."""
        while True:
            if self._drains:
                await self._idle.wait()
            elif self._in_transit or any(self._queues.values()):
                # Let handed-over batches reach their queues.
                await asyncio.sleep(0)
            else:
                return

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the timer.  With *drain*, flush open batches and wait for delivery.

        Without *drain*, in-flight deliveries are cancelled and every batch
        queued behind them is closed as ``exhausted_failed`` without an
        attempt.  Both are reported and their records released.  Batches
        scheduled after ``stop`` are held for the next ``start``.
        """
        if drain:
            self._accumulator.flush_all()
            await self.wait_idle()

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        with self._loop_lock:
            self._loop = None
        while self._in_transit:
            await asyncio.sleep(0)

        if not drain and (self._drains or self._queues):
            failed_before = self._failed
            in_flight = list(self._drains.values())
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            self._drains.clear()

            for key, queue in list(self._queues.items()):
                while queue:
                    batch = queue.popleft()
                    record_count = batch.size
                    try:
                        self._worker.abandon(batch, "dispatcher stopped before delivery")
                    finally:
                        self._accumulator.release(key, record_count)
                    self._failed += 1
            self._queues.clear()
            self._idle.set()
            logger.warning(
                "DeliveryDispatcher stopped without drain: %d batch(es) abandoned",
                self._failed - failed_before,
            )

        logger.info(
            "DeliveryDispatcher stopped (delivered=%d, failed=%d)",
            self._delivered,
            self._failed,
        )
