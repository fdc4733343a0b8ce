"""Tests for the in-memory resource client."""

from __future__ import annotations

import threading

import pytest

from kubefed.client.errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError
from kubefed.client.memory import InMemoryCluster, InMemoryResourceClient
from kubefed.client.resource import ResourceClient, WatchEventType
from kubefed.models import APIResource

DEPLOYMENT = APIResource(group="apps", kind="Deployment")


def _obj(name: str = "web", namespace: str = "ns", **spec: object) -> dict:
    return {"metadata": {"namespace": namespace, "name": name}, "spec": dict(spec)}


class TestCrud:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryResourceClient(DEPLOYMENT), ResourceClient)

    def test_create_and_get(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj(replicas=1))
        assert created["metadata"]["resourceVersion"] == "1"
        assert created["metadata"]["generation"] == 1
        assert client.get("ns", "web")["spec"] == {"replicas": 1}

    def test_create_duplicate(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj())
        with pytest.raises(AlreadyExistsError):
            client.create(_obj())

    def test_get_missing(self) -> None:
        with pytest.raises(NotFoundError):
            InMemoryResourceClient(DEPLOYMENT).get("ns", "nope")

    def test_get_returns_copy(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj(replicas=1))
        got = client.get("ns", "web")
        got["spec"]["replicas"] = 9
        assert client.get("ns", "web")["spec"]["replicas"] == 1

    def test_update_bumps_version_and_generation(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj(replicas=1))
        created["spec"]["replicas"] = 2
        updated = client.update(created)
        assert updated["metadata"]["resourceVersion"] == "2"
        assert updated["metadata"]["generation"] == 2

    def test_update_metadata_only_keeps_generation(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj(replicas=1))
        created["metadata"]["labels"] = {"a": "b"}
        assert client.update(created)["metadata"]["generation"] == 1

    def test_update_stale_version_conflicts(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj())
        client.update(created)
        with pytest.raises(ConflictError):
            client.update(created)

    def test_update_missing(self) -> None:
        with pytest.raises(NotFoundError):
            InMemoryResourceClient(DEPLOYMENT).update(_obj())

    def test_update_preserves_status(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj())
        with_status = dict(created, status={"ready": True})
        stored = client.update_status(with_status)
        stored.pop("status")
        assert client.update(stored)["status"] == {"ready": True}

    def test_update_status_only_touches_status(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        created = client.create(_obj(replicas=1))
        body = dict(created, spec={"replicas": 5}, status={"phase": "ok"})
        result = client.update_status(body)
        assert result["spec"] == {"replicas": 1}
        assert result["status"] == {"phase": "ok"}

    def test_list_filters(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj("a", "ns1"))
        labelled = _obj("b", "ns2")
        labelled["metadata"]["labels"] = {"tier": "web"}
        client.create(labelled)
        assert [o["metadata"]["name"] for o in client.list()] == ["a", "b"]
        assert [o["metadata"]["name"] for o in client.list("ns1")] == ["a"]
        assert [o["metadata"]["name"] for o in client.list(label_selector={"tier": "web"})] == ["b"]


class TestDeletion:
    def test_delete_without_finalizers_removes(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj())
        client.delete("ns", "web")
        with pytest.raises(NotFoundError):
            client.get("ns", "web")

    def test_delete_with_finalizers_marks_deleting(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        obj = _obj()
        obj["metadata"]["finalizers"] = ["x"]
        client.create(obj)
        client.delete("ns", "web")
        stored = client.get("ns", "web")
        assert "deletionTimestamp" in stored["metadata"]

    def test_removing_last_finalizer_completes_deletion(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        obj = _obj()
        obj["metadata"]["finalizers"] = ["x"]
        client.create(obj)
        client.delete("ns", "web")
        stored = client.get("ns", "web")
        stored["metadata"]["finalizers"] = []
        client.update(stored)
        with pytest.raises(NotFoundError):
            client.get("ns", "web")

    def test_delete_missing(self) -> None:
        with pytest.raises(NotFoundError):
            InMemoryResourceClient(DEPLOYMENT).delete("ns", "web")


class TestInstrumentation:
    def test_actions_recorded(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj())
        client.get("ns", "web")
        assert client.actions == [("create", "ns", "web"), ("get", "ns", "web")]
        assert client.writes() == [("create", "ns", "web")]

    def test_clear_actions(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.create(_obj())
        client.clear_actions()
        assert client.actions == []

    def test_fail_injects_errors(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        client.fail("create", ApiError("down", status=503), times=2)
        for _ in range(2):
            with pytest.raises(ApiError):
                client.create(_obj())
        client.create(_obj())
        assert client.get("ns", "web")


class TestWatch:
    def test_watch_streams_events(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        stop = threading.Event()
        events = client.watch("", stop)
        created = client.create(_obj())
        client.update(created)
        client.delete("ns", "web")
        received = [next(events).type for _ in range(3)]
        stop.set()
        assert received == [
            WatchEventType.ADDED,
            WatchEventType.MODIFIED,
            WatchEventType.DELETED,
        ]

    def test_watch_filters_namespace(self) -> None:
        client = InMemoryResourceClient(DEPLOYMENT)
        stop = threading.Event()
        events = client.watch("ns2", stop)
        client.create(_obj("a", "ns1"))
        client.create(_obj("b", "ns2"))
        event = next(events)
        stop.set()
        assert event.object["metadata"]["name"] == "b"


class TestInMemoryCluster:
    def test_clients_cached_per_kind(self) -> None:
        cluster = InMemoryCluster("a")
        assert cluster(DEPLOYMENT) is cluster.client(DEPLOYMENT)
        assert cluster(APIResource(kind="ConfigMap")) is not cluster(DEPLOYMENT)

    def test_shared_version_sequence(self) -> None:
        cluster = InMemoryCluster("a")
        first = cluster(DEPLOYMENT).create(_obj())
        second = cluster(APIResource(kind="ConfigMap")).create(_obj())
        assert first["metadata"]["resourceVersion"] == "1"
        assert second["metadata"]["resourceVersion"] == "2"

    def test_writes_across_kinds(self) -> None:
        cluster = InMemoryCluster("a")
        cluster(DEPLOYMENT).create(_obj())
        cluster(APIResource(kind="ConfigMap")).create(_obj("cm"))
        assert sorted(cluster.writes()) == [
            ("ConfigMap", "create", "ns", "cm"),
            ("Deployment", "create", "ns", "web"),
        ]
        cluster.clear_actions()
        assert cluster.writes() == []
