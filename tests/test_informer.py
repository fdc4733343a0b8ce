"""Tests for the list-then-watch Informer."""

from __future__ import annotations

import threading

from conftest import make_type_config
from kubefed.client.errors import ApiError
from kubefed.client.memory import InMemoryCluster
from kubefed.client.resource import WatchEventType
from kubefed.util.informer import Informer
from kubefed.util.retry import poll_until


def _recorder() -> tuple[list[tuple[WatchEventType, str]], object]:
    seen: list[tuple[WatchEventType, str]] = []
    lock = threading.Lock()

    def handler(event_type: WatchEventType, obj: dict) -> None:
        with lock:
            seen.append((event_type, obj["metadata"]["name"]))

    return seen, handler


class TestInformer:
    def test_lists_then_watches(self, stop_event: threading.Event) -> None:
        client = InMemoryCluster("host")(make_type_config().target)
        client.create({"metadata": {"namespace": "ns", "name": "old"}})
        seen, handler = _recorder()
        informer = Informer(client, handler, name="test")
        informer.run(stop_event)

        assert informer.wait_for_sync(5)
        assert (WatchEventType.ADDED, "old") in seen

        client.create({"metadata": {"namespace": "ns", "name": "new"}})
        client.delete("ns", "old")
        assert poll_until(
            lambda: (WatchEventType.DELETED, "old") in seen, interval=0.02, timeout=5
        )
        assert (WatchEventType.ADDED, "new") in seen
        informer.stop(5)

    def test_namespace_filter(self, stop_event: threading.Event) -> None:
        client = InMemoryCluster("host")(make_type_config().target)
        client.create({"metadata": {"namespace": "a", "name": "in-a"}})
        client.create({"metadata": {"namespace": "b", "name": "in-b"}})
        seen, handler = _recorder()
        informer = Informer(client, handler, namespace="a", name="test")
        informer.run(stop_event)
        assert informer.wait_for_sync(5)
        assert seen == [(WatchEventType.ADDED, "in-a")]
        informer.stop(5)

    def test_retries_failed_list(self, stop_event: threading.Event) -> None:
        client = InMemoryCluster("host")(make_type_config().target)
        client.fail("list", ApiError("down", status=503))
        seen, handler = _recorder()
        informer = Informer(client, handler, name="test", relist_delay=0.01)
        informer.run(stop_event)
        assert informer.wait_for_sync(5)
        informer.stop(5)

    def test_handler_errors_do_not_stop_the_loop(self, stop_event: threading.Event) -> None:
        client = InMemoryCluster("host")(make_type_config().target)
        calls: list[str] = []

        def handler(event_type: WatchEventType, obj: dict) -> None:
            calls.append(obj["metadata"]["name"])
            raise RuntimeError("boom")

        informer = Informer(client, handler, name="test")
        informer.run(stop_event)
        assert informer.wait_for_sync(5)
        client.create({"metadata": {"namespace": "ns", "name": "x"}})
        client.create({"metadata": {"namespace": "ns", "name": "y"}})
        assert poll_until(lambda: calls == ["x", "y"], interval=0.02, timeout=5)
        informer.stop(5)

    def test_stops_with_stop_event(self) -> None:
        client = InMemoryCluster("host")(make_type_config().target)
        stop = threading.Event()
        informer = Informer(client, lambda *_: None, name="test")
        informer.run(stop)
        assert informer.wait_for_sync(5)
        stop.set()
        informer.stop(5)
        assert not informer._thread.is_alive()

    def test_ended_watch_relists(self, stop_event: threading.Event) -> None:
        client = _ExpiringWatchClient(InMemoryCluster("host")(make_type_config().target))
        client.inner.create({"metadata": {"namespace": "ns", "name": "a"}})
        seen, handler = _recorder()
        informer = Informer(client, handler, name="test")
        informer.run(stop_event)
        assert poll_until(lambda: client.lists == 2, interval=0.02, timeout=5)
        assert poll_until(lambda: seen.count((WatchEventType.ADDED, "a")) == 2, timeout=5)
        informer.stop(5)


class _ExpiringWatchClient:
    """Ends its first watch at once, as an expired watch version does."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.lists = 0
        self._watches = 0

    def list(self, namespace: str = "") -> list[dict]:
        self.lists += 1
        return self.inner.list(namespace)

    def watch(self, namespace: str, stop_event: threading.Event):
        self._watches += 1
        if self._watches == 1:
            return iter(())
        return self.inner.watch(namespace, stop_event)
