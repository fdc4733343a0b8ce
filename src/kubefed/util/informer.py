"""List-then-watch loop that turns object changes into handler calls.

Controllers use an Informer only to learn *which* keys changed; the
reconcile functions always read current state through the client.  The
watch is requested before the initial list.  The in-memory client
subscribes at that point; the kubernetes client only connects on the
first iteration, without a resourceVersion, so the server replays every
existing object as ADDED.  Either way no change between the list and the
watch is lost.  A failed list, a broken watch or an expired watch
version starts over with a fresh list.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubefed.client.resource import ResourceClient, WatchEventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[WatchEventType, dict[str, Any]], None]


class Informer:
    """Feeds list + watch events for one client into *handler*."""

    def __init__(
        self,
        client: ResourceClient,
        handler: EventHandler,
        namespace: str = "",
        name: str = "informer",
        relist_delay: float = 1.0,
    ) -> None:
        self._client = client
        self._handler = handler
        self._namespace = namespace
        self._name = name
        self._relist_delay = relist_delay
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout)

    def run(self, stop_event: threading.Event) -> None:
        """Start the loop on a daemon thread; it exits when either stop signal is set."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, args=(stop_event,), name=self._name, daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    # --- Private ---

    def _stopped(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    def _loop(self, stop_event: threading.Event) -> None:
        combined = threading.Event()

        def _link() -> None:
            while not combined.is_set():
                if self._stopped(stop_event):
                    combined.set()
                    return
                stop_event.wait(0.05)

        linker = threading.Thread(target=_link, name=f"{self._name}-stop", daemon=True)
        linker.start()

        while not combined.is_set():
            try:
                events = self._client.watch(self._namespace, combined)
                for obj in self._client.list(self._namespace):
                    self._dispatch(WatchEventType.ADDED, obj)
                self._synced.set()
                for event in events:
                    self._dispatch(event.type, event.object)
            except Exception:
                logger.exception("%s: list/watch failed, retrying", self._name)
                combined.wait(self._relist_delay)
        logger.debug("%s stopped", self._name)

    def _dispatch(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        try:
            self._handler(event_type, obj)
        except Exception:
            logger.exception("%s: event handler failed", self._name)
