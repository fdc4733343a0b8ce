"""Rate-limited, deduplicating work queue.

A key is held in at most one of three places:

- ``queued``: waiting to be handed to a worker
- ``processing``: currently held by a worker
- ``dirty``: re-added while processing; re-queued when the worker calls
  ``done``

so the same key is never processed by two workers at once, and repeated
adds while waiting collapse into one.  Delayed adds sit in a heap until
their time comes.  Per-key failure counts drive exponential backoff.

All state is guarded by one condition variable.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable


class WorkQueue:
    """Work queue with dedup, delayed adds and per-key exponential backoff."""

    def __init__(
        self,
        initial_backoff: float = 0.005,
        max_backoff: float = 1000.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._clock = _clock or time.monotonic
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> None:
        """Add *key* after a delay that doubles with each consecutive failure."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._initial_backoff * (2**failures), self._max_backoff)
        self.add_after(key, delay)

    def forget(self, key: Hashable) -> None:
        """Reset the failure count of *key*."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and mark it as processing.

        Returns None when the queue shuts down or *timeout* expires.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key

                wait: float | None = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0.0)
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark *key* as processed; a dirty key is queued again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue_locked(key)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    # --- Private (caller holds the condition) ---

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._enqueue_locked(key)

    def _enqueue_locked(self, key: Hashable) -> None:
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
