"""Tests for the kubernetes-backed ResourceClient.

All kubernetes client calls are mocked; no real cluster needed.
"""

from __future__ import annotations

import itertools
import json
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from unittest.mock import MagicMock, call, patch

import pytest

from kubefed.client.errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError
from kubefed.client.kube import (
    ClusterCredentials,
    KubernetesResourceClient,
    build_api_client,
    kubernetes_client_factory,
)
from kubefed.client.resource import WatchEventType
from kubefed.models import APIResource

DEPLOYMENTS = APIResource(group="apps", version="v1", kind="Deployment")


class ResourceNotFoundError(Exception):
    pass


class ApiException(Exception):
    """Stands in for kubernetes.client.exceptions.ApiException (matched by name)."""

    def __init__(self, status: int, reason: str = "", body: str | None = None) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason
        self.body = body


# --- Helpers ---


@contextmanager
def _mock_kubernetes_modules() -> Iterator[tuple[Any, Any, Any]]:
    """Inject mock kubernetes modules into sys.modules."""
    mock_k8s = MagicMock()
    mock_client = mock_k8s.client
    mock_config = mock_k8s.config
    mock_dynamic = mock_k8s.dynamic
    configuration = MagicMock()
    configuration.api_key = {}
    configuration.api_key_prefix = {}
    mock_client.Configuration.return_value = configuration
    mock_exceptions = MagicMock()
    mock_exceptions.ResourceNotFoundError = ResourceNotFoundError
    mock_dynamic.exceptions = mock_exceptions

    modules = {
        "kubernetes": mock_k8s,
        "kubernetes.client": mock_client,
        "kubernetes.config": mock_config,
        "kubernetes.dynamic": mock_dynamic,
        "kubernetes.dynamic.exceptions": mock_exceptions,
    }
    with patch.dict(sys.modules, modules):
        yield mock_client, mock_config, mock_dynamic


def _result(value: dict[str, Any]) -> MagicMock:
    result = MagicMock()
    result.to_dict.return_value = value
    return result


@pytest.fixture
def k8s() -> Iterator[tuple[Any, Any, Any]]:
    with _mock_kubernetes_modules() as mocks:
        yield mocks


@pytest.fixture
def resource(k8s) -> MagicMock:
    _, _, mock_dynamic = k8s
    return mock_dynamic.DynamicClient.return_value.resources.get.return_value


@pytest.fixture
def client(k8s) -> KubernetesResourceClient:
    return KubernetesResourceClient(MagicMock(), DEPLOYMENTS)


# --- build_api_client ---


class TestBuildApiClient:
    def test_token(self, k8s) -> None:
        mock_client, _, _ = k8s
        api = build_api_client(
            ClusterCredentials(host="https://api.example", token="tok", verify_ssl=False)
        )
        configuration = mock_client.Configuration.return_value
        assert configuration.api_key["authorization"] == "tok"
        assert configuration.api_key_prefix["authorization"] == "Bearer"
        assert configuration.host == "https://api.example"
        assert configuration.verify_ssl is False
        mock_client.ApiClient.assert_called_once_with(configuration)
        assert api is mock_client.ApiClient.return_value

    def test_in_cluster(self, k8s) -> None:
        mock_client, mock_config, _ = k8s
        api = build_api_client(ClusterCredentials(in_cluster=True))
        mock_config.load_incluster_config.assert_called_once()
        assert api is mock_client.ApiClient.return_value

    def test_kubeconfig(self, k8s) -> None:
        _, mock_config, _ = k8s
        api = build_api_client(ClusterCredentials(kubeconfig="/tmp/kc", context="east"))
        mock_config.new_client_from_config.assert_called_once_with(
            config_file="/tmp/kc", context="east"
        )
        assert api is mock_config.new_client_from_config.return_value

    def test_default_kubeconfig(self, k8s) -> None:
        _, mock_config, _ = k8s
        build_api_client(ClusterCredentials())
        mock_config.new_client_from_config.assert_called_once_with()


# --- KubernetesResourceClient ---


class TestKubernetesResourceClient:
    def test_resolves_resource_once(self, k8s, client, resource) -> None:
        _, _, mock_dynamic = k8s
        resource.get.return_value = _result({"metadata": {"name": "web"}})
        client.get("ns", "web")
        client.get("ns", "web")
        resources = mock_dynamic.DynamicClient.return_value.resources
        resources.get.assert_called_once_with(api_version="apps/v1", kind="Deployment")

    def test_get(self, client, resource) -> None:
        resource.get.return_value = _result({"metadata": {"name": "web"}})
        assert client.get("ns", "web") == {"metadata": {"name": "web"}}
        resource.get.assert_called_once_with(name="web", namespace="ns")

    def test_get_cluster_scoped(self, client, resource) -> None:
        resource.get.return_value = _result({})
        client.get("", "web")
        resource.get.assert_called_once_with(name="web", namespace=None)

    def test_list_with_selector(self, client, resource) -> None:
        resource.get.return_value = _result({"items": [{"metadata": {"name": "a"}}]})
        items = client.list("ns", label_selector={"b": "2", "a": "1"})
        assert items == [{"metadata": {"name": "a"}}]
        resource.get.assert_called_once_with(namespace="ns", label_selector="a=1,b=2")

    def test_list_all_namespaces(self, client, resource) -> None:
        resource.get.return_value = _result({"items": None})
        assert client.list() == []
        resource.get.assert_called_once_with()

    def test_create(self, client, resource) -> None:
        body = {"metadata": {"namespace": "ns", "name": "web"}}
        resource.create.return_value = _result(body)
        assert client.create(body) == body
        resource.create.assert_called_once_with(body=body, namespace="ns")

    def test_update_status(self, client, resource) -> None:
        body = {"metadata": {"namespace": "ns", "name": "web"}, "status": {}}
        resource.status.replace.return_value = _result(body)
        client.update_status(body)
        resource.status.replace.assert_called_once_with(body=body, namespace="ns")

    def test_delete(self, client, resource) -> None:
        client.delete("ns", "web")
        resource.delete.assert_called_once_with(name="web", namespace="ns")

    def test_not_found(self, client, resource) -> None:
        resource.get.side_effect = ApiException(404, "Not Found")
        with pytest.raises(NotFoundError):
            client.get("ns", "web")

    def test_already_exists(self, client, resource) -> None:
        body = json.dumps({"reason": "AlreadyExists", "message": "deployments \"web\" exists"})
        resource.create.side_effect = ApiException(409, "Conflict", body)
        with pytest.raises(AlreadyExistsError) as exc_info:
            client.create({"metadata": {"namespace": "ns", "name": "web"}})
        assert "exists" in str(exc_info.value)

    def test_conflict(self, client, resource) -> None:
        resource.replace.side_effect = ApiException(409, "Conflict")
        with pytest.raises(ConflictError):
            client.update({"metadata": {"namespace": "ns", "name": "web"}})

    def test_server_error(self, client, resource) -> None:
        resource.get.side_effect = ApiException(503, "Service Unavailable")
        with pytest.raises(ApiError) as exc_info:
            client.get("ns", "web")
        assert exc_info.value.status == 503

    def test_other_errors_propagate(self, client, resource) -> None:
        resource.get.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            client.get("ns", "web")

    def test_resource_not_served(self, k8s) -> None:
        _, _, mock_dynamic = k8s
        mock_dynamic.DynamicClient.return_value.resources.get.side_effect = (
            ResourceNotFoundError("no matches")
        )
        client = KubernetesResourceClient(MagicMock(), DEPLOYMENTS)
        with pytest.raises(ApiError) as exc_info:
            client.get("ns", "web")
        assert exc_info.value.status == 404


class TestWatch:
    def test_yields_known_events(self, client, resource) -> None:
        resource.watch.return_value = [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "a"}}},
            {"type": "BOOKMARK", "raw_object": {}},
            {"type": "MODIFIED", "raw_object": {"metadata": {"name": "a"}}},
        ]
        events = list(itertools.islice(client.watch("ns", threading.Event()), 2))
        assert [e.type for e in events] == [WatchEventType.ADDED, WatchEventType.MODIFIED]
        resource.watch.assert_called_with(timeout=5, namespace="ns")

    def test_stops_when_event_set(self, client, resource) -> None:
        stop = threading.Event()
        stop.set()
        assert list(client.watch("", stop)) == []

    def test_api_error_is_translated(self, client, resource) -> None:
        resource.watch.side_effect = ApiException(403, "Forbidden")
        with pytest.raises(ApiError) as exc_info:
            list(client.watch("", threading.Event()))
        assert exc_info.value.status == 403

    def test_reopened_watch_resumes_from_last_version(self, client, resource) -> None:
        def event(event_type: str, version: str) -> dict[str, Any]:
            return {"type": event_type, "raw_object": {"metadata": {"resourceVersion": version}}}

        resource.watch.side_effect = [
            [event("ADDED", "7")],
            [event("BOOKMARK", "8")],
            [event("MODIFIED", "9")],
        ]
        events = list(itertools.islice(client.watch("ns", threading.Event()), 2))
        assert [e.type for e in events] == [WatchEventType.ADDED, WatchEventType.MODIFIED]
        assert resource.watch.call_args_list == [
            call(timeout=5, namespace="ns"),
            call(timeout=5, namespace="ns", resource_version="7"),
            call(timeout=5, namespace="ns", resource_version="8"),
        ]

    def test_expired_version_event_ends_stream(self, client, resource) -> None:
        resource.watch.return_value = [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "a", "resourceVersion": "3"}}},
            {"type": "ERROR", "raw_object": {"code": 410, "reason": "Expired"}},
        ]
        events = list(client.watch("", threading.Event()))
        assert [e.type for e in events] == [WatchEventType.ADDED]
        resource.watch.assert_called_once()

    def test_gone_exception_ends_stream(self, client, resource) -> None:
        resource.watch.side_effect = ApiException(410, "Gone")
        assert list(client.watch("", threading.Event())) == []

    def test_error_event_raises(self, client, resource) -> None:
        resource.watch.return_value = [
            {"type": "ERROR", "raw_object": {"code": 500, "message": "etcd unavailable"}},
        ]
        with pytest.raises(ApiError, match="etcd unavailable") as exc_info:
            list(client.watch("", threading.Event()))
        assert exc_info.value.status == 500


class TestClientFactory:
    def test_caches_clients_per_kind(self, k8s) -> None:
        factory = kubernetes_client_factory(MagicMock())
        assert factory(DEPLOYMENTS) is factory(DEPLOYMENTS)
        assert factory(DEPLOYMENTS) is not factory(APIResource(kind="ConfigMap"))

    def test_missing_kubernetes(self) -> None:
        with patch.dict(sys.modules, {"kubernetes": None}):
            with pytest.raises(ImportError, match="pip install kubefed-core"):
                KubernetesResourceClient(MagicMock(), DEPLOYMENTS)
