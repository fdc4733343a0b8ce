"""Shared fixtures: type configs and in-memory federations."""

from __future__ import annotations

import threading
from collections.abc import Iterator

import pytest

from kubefed.client.memory import InMemoryCluster
from kubefed.cluster import ClusterRegistry, ClusterSnapshot
from kubefed.models import APIResource, FederatedTypeConfig


def make_type_config(
    kind: str = "Deployment",
    group: str = "apps",
    *,
    namespaced: bool = True,
    status_enabled: bool = False,
    scheduling: str | None = None,
) -> FederatedTypeConfig:
    plural = kind.lower() + "s"
    name = f"{plural}.{group}" if group else plural
    return FederatedTypeConfig(
        name=name,
        target=APIResource(group=group, version="v1", kind=kind, namespaced=namespaced),
        federatedType=APIResource(
            group="types.kubefed.io",
            version="v1beta1",
            kind=f"Federated{kind}",
            namespaced=namespaced,
        ),
        schedulingPreferenceKind=scheduling,
        statusEnabled=status_enabled,
    )


@pytest.fixture
def deployment_type() -> FederatedTypeConfig:
    return make_type_config(status_enabled=True, scheduling="ReplicaSchedulingPreference")


@pytest.fixture
def namespace_type() -> FederatedTypeConfig:
    return make_type_config("Namespace", "", namespaced=False)


@pytest.fixture
def host() -> InMemoryCluster:
    return InMemoryCluster("host")


@pytest.fixture
def members() -> dict[str, InMemoryCluster]:
    return {name: InMemoryCluster(name) for name in ("cluster-a", "cluster-b")}


@pytest.fixture
def registry(members: dict[str, InMemoryCluster]) -> ClusterRegistry:
    reg = ClusterRegistry()
    for name, cluster in members.items():
        reg.add_cluster(ClusterSnapshot(name=name, client_factory=cluster, labels={"name": name}))
    return reg


@pytest.fixture
def stop_event() -> Iterator[threading.Event]:
    event = threading.Event()
    yield event
    event.set()
