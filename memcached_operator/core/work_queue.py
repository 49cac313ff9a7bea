"""
Deduplicating work queue for reconcile requests.

Keys are resource identities ("namespace/name"). The queue guarantees:
- a key is waiting in the queue at most once, however many events arrive
- a key is handed to at most one worker at a time; if it is re-added while
  a worker holds it, it is queued again once the worker calls done()
- delayed re-adds (add_after) and per-key exponential failure backoff

Usage:
    >>> queue = WorkQueue()
    >>> queue.add("demo/mc1")
    >>> key = await queue.get()
    >>> try:
    ...     await reconcile(key)
    ... finally:
    ...     queue.done(key)
"""

import asyncio
from typing import Dict, Set, List

from memcached_operator.config.logging import get_logger

logger = get_logger(__name__)


class ShutDown(Exception):
    """Raised by get() once the queue has been shut down and drained."""


class WorkQueue:
    """
    In-process deduplicating queue.

    Mirrors the dirty/processing bookkeeping of client-go's workqueue so a
    burst of watch events for one identity collapses into a single re-run.
    """

    def __init__(self, backoff_base: float = 1.0, backoff_max: float = 300.0):
        self._queue: List[str] = []
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._ready = asyncio.Event()
        self._shutting_down = False
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> Set[str]:
        return set(self._processing)

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key after delay seconds. A shorter pending delay wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(when, self._fire_timer, key)

    def add_rate_limited(self, key: str) -> float:
        """Queue a key after its exponential failure backoff. Returns the delay used."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self.backoff_base * (2 ** failures), self.backoff_max)
        logger.debug("work_queue_backoff", key=key, failures=failures + 1, delay_seconds=delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure backoff for a key."""
        self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str:
        """
        Wait for the next key and mark it as processing.

        Raises:
            ShutDown: when the queue has been shut down
        """
        while True:
            if self._shutting_down:
                raise ShutDown()
            if self._queue:
                key = self._queue.pop(0)
                self._processing.add(key)
                self._dirty.discard(key)
                return key
            self._ready.clear()
            await self._ready.wait()

    def done(self, key: str) -> None:
        """Mark a key as finished; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._notify()

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending timers."""
        self._shutting_down = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._notify()

    def _fire_timer(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _notify(self) -> None:
        self._ready.set()
