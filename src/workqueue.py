"""
Rate limited work queue.

Keys waiting in the queue are deduplicated, and a key being processed is
never handed to a second worker: re-adding it while in flight only marks
it dirty, and it is queued again once the worker calls ``done``.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ExponentialRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        """Record a failure for ``item`` and return how long to wait."""
        exponent = self._failures.get(item, 0)
        self._failures[item] = exponent + 1

        # Avoid float overflow for long failure streaks
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate limited adds."""

    def __init__(
        self,
        name: str = "",
        rate_limiter: Optional[ExponentialRateLimiter] = None,
    ):
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialRateLimiter()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._not_empty = asyncio.Event()
        self._shutting_down = False
        self._delayed: Set[asyncio.TimerHandle] = set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, item: Hashable) -> None:
        """Queue an item unless it is already waiting."""
        if self._shutting_down or item in self._dirty:
            return

        self._dirty.add(item)
        if item in self._processing:
            return

        self._queue.append(item)
        self._not_empty.set()

    async def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Wait for the next item.

        Returns:
            ``(item, False)``, or ``(None, True)`` once the queue is shut
            down and drained.
        """
        while not self._queue and not self._shutting_down:
            self._not_empty.clear()
            await self._not_empty.wait()

        if not self._queue:
            return None, True

        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: Hashable) -> None:
        """Mark an item as processed, re-queueing it if it was re-added."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._not_empty.set()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self._delayed.discard(handle)
            self.add(item)

        handle = loop.call_later(delay, fire)
        self._delayed.add(handle)

    def add_rate_limited(self, item: Hashable) -> None:
        if self._shutting_down:
            return
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Reset the retry history of an item."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shutdown(self) -> None:
        """Stop accepting items and wake every waiting worker."""
        self._shutting_down = True
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()
        self._not_empty.set()
        logger.debug(f"Work queue {self.name} shut down")
