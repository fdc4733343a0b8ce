"""Reconcile worker: a pool of threads draining one WorkQueue.

The reconcile function reports a :class:`ReconciliationStatus` which
decides what happens to the key next:

- ``ALL_OK``: failure count reset, nothing requeued
- ``ERROR``: requeued with exponential backoff
- ``NEEDS_RECHECK``: requeued after ``review_delay``
- ``NOT_SYNCED``: requeued after ``cluster_sync_delay``

An exception escaping the reconcile function counts as ``ERROR``; it
never stops the pool.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable

from kubefed.config import WorkerTiming
from kubefed.models import ReconciliationStatus
from kubefed.util.workqueue import WorkQueue

logger = logging.getLogger(__name__)

ReconcileFunc = Callable[[Hashable], ReconciliationStatus]


class ReconcileWorker:
    """Runs *reconcile* for queued keys on ``worker_count`` threads."""

    def __init__(
        self,
        name: str,
        reconcile: ReconcileFunc,
        timing: WorkerTiming | None = None,
        worker_count: int = 1,
    ) -> None:
        self._name = name
        self._reconcile = reconcile
        self._timing = timing or WorkerTiming()
        self._worker_count = max(worker_count, 1)
        self._queue = WorkQueue(
            initial_backoff=self._timing.initial_backoff,
            max_backoff=self._timing.max_backoff,
        )
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def enqueue(self, key: Hashable) -> None:
        self._queue.add(key)

    def enqueue_after(self, key: Hashable, delay: float) -> None:
        self._queue.add_after(key, delay)

    def run(self, stop_event: threading.Event) -> None:
        """Start the worker threads; they exit once *stop_event* is set."""
        with self._lock:
            if self._threads:
                return
            for i in range(self._worker_count):
                t = threading.Thread(
                    target=self._loop,
                    name=f"{self._name}-worker-{i}",
                    daemon=True,
                )
                t.start()
                self._threads.append(t)
            watcher = threading.Thread(
                target=self._shutdown_on,
                args=(stop_event,),
                name=f"{self._name}-stop",
                daemon=True,
            )
            watcher.start()
            self._threads.append(watcher)

    def stop(self) -> None:
        """Stop dequeuing; in-flight reconciles are allowed to finish."""
        self._queue.shut_down()

    def wait(self, timeout: float | None = None) -> bool:
        """Join every thread.  Returns False if any is still alive."""
        with self._lock:
            threads = list(self._threads)
        for t in threads:
            if t is threading.current_thread():
                continue
            t.join(timeout)
        return not any(
            t.is_alive() for t in threads if t is not threading.current_thread()
        )

    def process_next(self, timeout: float | None = 0) -> bool:
        """Process one key on the calling thread.  Returns False if none was ready."""
        key = self._queue.get(timeout=timeout)
        if key is None:
            return False
        self._process(key)
        return True

    # --- Private ---

    def _shutdown_on(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(0.1):
            if self._queue.shutting_down:
                return
        self._queue.shut_down()

    def _loop(self) -> None:
        while True:
            key = self._queue.get()
            if key is None:
                logger.debug("%s worker exiting", self._name)
                return
            self._process(key)

    def _process(self, key: Hashable) -> None:
        try:
            status = self._reconcile(key)
        except Exception:
            logger.exception("%s: unexpected error reconciling %s", self._name, key)
            status = ReconciliationStatus.ERROR
        finally:
            self._queue.done(key)

        if status == ReconciliationStatus.ALL_OK:
            self._queue.forget(key)
        elif status == ReconciliationStatus.ERROR:
            self._queue.add_rate_limited(key)
        elif status == ReconciliationStatus.NEEDS_RECHECK:
            self._queue.forget(key)
            self._queue.add_after(key, self._timing.review_delay)
        elif status == ReconciliationStatus.NOT_SYNCED:
            self._queue.add_after(key, self._timing.cluster_sync_delay)
