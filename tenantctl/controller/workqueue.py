"""Rate-limited work queue for reconciliation keys.

A key is in at most one of three places: waiting in the FIFO, being
processed by exactly one worker, or both marked dirty and processing (it
was re-added mid-pass). ``done`` moves a dirty key back into the FIFO, so
any number of triggers during a pass collapse into one re-run.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

from tenantctl.core.exceptions import ControllerError
from tenantctl.core.metrics import set_queue_depth

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class QueueShutDown(ControllerError):
    """Raised from ``get`` once the queue is shutting down."""


class ExponentialBackoff(Generic[K]):
    """Per-key exponential backoff: initial, doubling, capped."""

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 300.0,
        factor: float = 2.0,
    ) -> None:
        if initial <= 0 or maximum < initial:
            raise ValueError("backoff requires 0 < initial <= maximum")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._failures: dict[K, int] = {}

    def next_delay(self, key: K) -> float:
        """Record a failure for ``key`` and return how long to wait."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        # Clamp the exponent so long failure streaks cannot overflow
        exponent = min(failures, 64)
        return min(self.initial * self.factor**exponent, self.maximum)

    def forget(self, key: K) -> None:
        """Reset ``key`` after a successful pass or a spec change."""
        self._failures.pop(key, None)

    def failures(self, key: K) -> int:
        return self._failures.get(key, 0)


class WorkQueue(Generic[K]):
    """
    FIFO of keys with de-duplication and per-key serialization.

    Must be used from a single event loop.
    """

    def __init__(self) -> None:
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Mark ``key`` as needing a pass."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        set_queue_depth(len(self._queue))
        self._wakeup_one()

    def add_after(self, key: K, delay: float) -> None:
        """Add ``key`` after ``delay`` seconds.

        Only the earliest pending timer per key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()
        handle = loop.call_later(delay, self._fire, key)
        self._timers[key] = (deadline, handle)

    def cancel_delayed(self, key: K) -> bool:
        """Drop a pending delayed add for ``key``."""
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def has_delayed(self, key: K) -> bool:
        return key in self._timers

    def is_queued(self, key: K) -> bool:
        return key in self._dirty

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def is_idle(self) -> bool:
        """True when nothing is queued, running or scheduled."""
        return not self._queue and not self._processing and not self._timers

    async def get(self) -> K:
        """Wait for the next key and mark it as processing.

        Raises:
            QueueShutDown: If the queue is shutting down.
        """
        while not self._queue:
            if self._shutting_down:
                raise QueueShutDown("work queue is shutting down")
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter.done() and not waiter.cancelled():
                    # Pass the wakeup on to another worker
                    self._wakeup_one()
                raise
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        if self._shutting_down:
            raise QueueShutDown("work queue is shutting down")

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        set_queue_depth(len(self._queue))
        return key

    def done(self, key: K) -> None:
        """Mark a pass over ``key`` finished."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            set_queue_depth(len(self._queue))
            self._wakeup_one()

    def shut_down(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
        logger.debug("Work queue shut down with %d keys pending", len(self._queue))

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _wakeup_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
