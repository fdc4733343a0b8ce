"""Tests for the Scheduler and the SchedulingManager lifecycle."""

from __future__ import annotations

import threading
from collections.abc import Iterator

import pytest

from conftest import make_type_config
from kubefed.client.errors import NotFoundError
from kubefed.client.memory import InMemoryCluster
from kubefed.cluster import ClusterRegistry
from kubefed.config import ControllerConfig
from kubefed.models import FederatedTypeConfig, QualifiedName, ReconciliationStatus
from kubefed.scheduling.manager import SchedulingManager, TypeState, start_scheduling_manager
from kubefed.scheduling.scheduler import RECONCILE_ALL, Scheduler
from kubefed.scheduling.types import REPLICA_SCHEDULING
from kubefed.typeregistry import TypeRegistry
from kubefed.util.overrides import get_overrides
from kubefed.util.placement import get_cluster_names
from kubefed.util.retry import poll_until

NAME = QualifiedName("ns", "web")
RSP = "ReplicaSchedulingPreference"


def _preference(total: int = 4, target_kind: str = "FederatedDeployment", **spec: object) -> dict:
    return {
        "apiVersion": "scheduling.kubefed.io/v1alpha1",
        "kind": RSP,
        "metadata": {"namespace": "ns", "name": "web"},
        "spec": {"targetKind": target_kind, "totalReplicas": total, **spec},
    }


def _fed_object() -> dict:
    return {
        "apiVersion": "types.kubefed.io/v1beta1",
        "kind": "FederatedDeployment",
        "metadata": {"namespace": "ns", "name": "web"},
        "spec": {"template": {"spec": {"replicas": 1}}},
    }


class TestScheduler:
    @pytest.fixture
    def scheduler(
        self,
        host: InMemoryCluster,
        registry: ClusterRegistry,
        deployment_type: FederatedTypeConfig,
    ) -> Iterator[Scheduler]:
        scheduler = Scheduler(REPLICA_SCHEDULING, ControllerConfig.for_testing(), host, registry)
        scheduler.start_plugin(deployment_type)
        yield scheduler
        scheduler.wait(5)

    def _prefs(self, host: InMemoryCluster):
        return host(REPLICA_SCHEDULING.preference_resource)

    def _fed(self, host: InMemoryCluster, deployment_type: FederatedTypeConfig):
        return host(deployment_type.federated_type)

    def test_writes_placement_and_overrides(self, scheduler, host, deployment_type) -> None:
        self._prefs(host).create(_preference(total=5))
        self._fed(host, deployment_type).create(_fed_object())

        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK
        obj = self._fed(host, deployment_type).get("ns", "web")
        assert get_cluster_names(obj) == ["cluster-a", "cluster-b"]
        overrides = get_overrides(obj)
        assert overrides["cluster-a"][0].value == 3
        assert overrides["cluster-b"][0].value == 2

    def test_reschedules_when_cluster_unready(
        self, scheduler, host, registry, deployment_type
    ) -> None:
        self._prefs(host).create(_preference(total=4))
        self._fed(host, deployment_type).create(_fed_object())
        scheduler.reconcile(NAME)

        registry.set_ready("cluster-b", False)
        scheduler.reconcile(NAME)
        obj = self._fed(host, deployment_type).get("ns", "web")
        assert get_cluster_names(obj) == ["cluster-a"]
        assert set(get_overrides(obj)) == {"cluster-a"}
        assert get_overrides(obj)["cluster-a"][0].value == 4

    def test_no_ready_clusters_leaves_object(
        self, scheduler, host, registry, deployment_type
    ) -> None:
        self._prefs(host).create(_preference())
        fed = self._fed(host, deployment_type)
        fed.create(_fed_object())
        registry.set_ready("cluster-a", False)
        registry.set_ready("cluster-b", False)
        fed.clear_actions()

        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK
        assert fed.writes() == []

    def test_unchanged_result_is_not_written(self, scheduler, host, deployment_type) -> None:
        self._prefs(host).create(_preference())
        fed = self._fed(host, deployment_type)
        fed.create(_fed_object())
        scheduler.reconcile(NAME)
        fed.clear_actions()

        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK
        assert fed.writes() == []

    def test_missing_preference(self, scheduler) -> None:
        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK

    def test_missing_federated_object(self, scheduler, host) -> None:
        self._prefs(host).create(_preference())
        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK

    def test_invalid_preference(self, scheduler, host) -> None:
        pref = _preference()
        del pref["spec"]["targetKind"]
        self._prefs(host).create(pref)
        assert scheduler.reconcile(NAME) == ReconciliationStatus.NEEDS_RECHECK

    def test_unknown_target_kind(self, scheduler, host, deployment_type) -> None:
        self._prefs(host).create(_preference(target_kind="FederatedReplicaSet"))
        fed = self._fed(host, deployment_type)
        fed.create(_fed_object())
        fed.clear_actions()
        assert scheduler.reconcile(NAME) == ReconciliationStatus.ALL_OK
        assert fed.writes() == []

    def test_reconcile_all(self, scheduler, host) -> None:
        self._prefs(host).create(_preference())
        assert scheduler.reconcile(RECONCILE_ALL) == ReconciliationStatus.ALL_OK

    def test_plugins(self, scheduler, deployment_type) -> None:
        assert scheduler.has_plugin(deployment_type.name)
        scheduler.start_plugin(deployment_type)
        assert scheduler.plugin_names() == [deployment_type.name]
        scheduler.stop_plugin(deployment_type.name, 5)
        assert not scheduler.has_plugin(deployment_type.name)
        scheduler.stop_plugin(deployment_type.name, 5)


class TestSchedulingManager:
    @pytest.fixture
    def run_manager(self, host: InMemoryCluster, registry: ClusterRegistry) -> Iterator:
        running: list[tuple[SchedulingManager, threading.Event]] = []

        def factory(type_registry: TypeRegistry) -> SchedulingManager:
            stop = threading.Event()
            manager = start_scheduling_manager(
                ControllerConfig.for_testing(),
                stop,
                type_registry=type_registry,
                host_factory=host,
                cluster_registry=registry,
            )
            running.append((manager, stop))
            return manager

        yield factory
        for manager, stop in running:
            stop.set()
            manager.wait(10)

    def _running(self, manager: SchedulingManager, name: str) -> bool:
        return poll_until(
            lambda: manager.type_state(name) == TypeState.RUNNING, interval=0.02, timeout=5
        )

    def _absent(self, manager: SchedulingManager, name: str) -> bool:
        return poll_until(
            lambda: manager.type_state(name) == TypeState.ABSENT, interval=0.02, timeout=5
        )

    def test_starts_controllers_for_scheduled_types(self, run_manager, deployment_type) -> None:
        plain = make_type_config("ConfigMap", "")
        manager = run_manager(TypeRegistry([deployment_type, plain]))

        assert self._running(manager, deployment_type.name)
        scheduler = manager.get_scheduler(RSP)
        assert scheduler is not None
        assert scheduler.has_plugin(deployment_type.name)
        assert manager.sync_controller(deployment_type.name) is not None
        assert manager.type_state(plain.name) == TypeState.ABSENT

    def test_registering_later(self, run_manager, deployment_type) -> None:
        types = TypeRegistry()
        manager = run_manager(types)
        assert manager.get_scheduler(RSP) is None
        types.register(deployment_type)
        assert self._running(manager, deployment_type.name)

    def test_unregister_stops_everything(self, run_manager, deployment_type) -> None:
        types = TypeRegistry([deployment_type])
        manager = run_manager(types)
        assert self._running(manager, deployment_type.name)

        types.unregister(deployment_type.name)
        assert self._absent(manager, deployment_type.name)
        assert manager.get_scheduler(RSP) is None
        assert manager.sync_controller(deployment_type.name) is None

    def test_no_writes_after_unregister(
        self, run_manager, host, members, deployment_type
    ) -> None:
        prefs = host(REPLICA_SCHEDULING.preference_resource)
        prefs.create(_preference(total=4))
        fed_client = host(deployment_type.federated_type)
        fed_client.create(_fed_object())
        types = TypeRegistry([deployment_type])
        manager = run_manager(types)

        def propagated() -> bool:
            try:
                return all(
                    members[c](deployment_type.target).get("ns", "web")["spec"]["replicas"] == 2
                    for c in ("cluster-a", "cluster-b")
                )
            except NotFoundError:
                return False

        assert poll_until(propagated, interval=0.05, timeout=10)
        types.unregister(deployment_type.name)
        assert self._absent(manager, deployment_type.name)

        host.clear_actions()
        for cluster in members.values():
            cluster.clear_actions()
        pref = prefs.get("ns", "web")
        pref["spec"]["totalReplicas"] = 6
        prefs.update(pref)
        fed = fed_client.get("ns", "web")
        fed["spec"]["template"]["spec"]["replicas"] = 9
        fed_client.update(fed)

        def written_elsewhere() -> bool:
            return len(host.writes()) > 2 or any(c.writes() for c in members.values())

        assert not poll_until(written_elsewhere, interval=0.05, timeout=1)
        assert sorted(host.writes()) == sorted(
            [
                (RSP, "update", "ns", "web"),
                ("FederatedDeployment", "update", "ns", "web"),
            ]
        )

    def test_config_change_restarts(self, run_manager, deployment_type) -> None:
        types = TypeRegistry([deployment_type])
        manager = run_manager(types)
        assert self._running(manager, deployment_type.name)
        first = manager.sync_controller(deployment_type.name)

        types.register(deployment_type.model_copy(update={"status_enabled": False}))

        def restarted() -> bool:
            current = manager.sync_controller(deployment_type.name)
            return (
                current is not None
                and current is not first
                and manager.type_state(deployment_type.name) == TypeState.RUNNING
            )

        assert poll_until(restarted, interval=0.02, timeout=5)
        assert not manager.sync_controller(deployment_type.name).type_config.status_enabled

    def test_scheduler_shared_by_kind(self, run_manager, deployment_type) -> None:
        replicasets = make_type_config("ReplicaSet", scheduling=RSP)
        types = TypeRegistry([deployment_type, replicasets])
        manager = run_manager(types)
        assert self._running(manager, deployment_type.name)
        assert self._running(manager, replicasets.name)
        assert manager.get_scheduler(RSP).plugin_names() == sorted(
            [deployment_type.name, replicasets.name]
        )

        types.unregister(replicasets.name)
        assert self._absent(manager, replicasets.name)
        assert manager.get_scheduler(RSP).plugin_names() == [deployment_type.name]

    def test_unknown_scheduling_kind_is_ignored(self, host, registry) -> None:
        bogus = make_type_config(scheduling="BogusSchedulingPreference")
        manager = SchedulingManager(
            ControllerConfig.for_testing(), TypeRegistry([bogus]), host, registry
        )
        assert manager.reconcile(bogus.name) == ReconciliationStatus.ALL_OK
        assert manager.type_state(bogus.name) == TypeState.ABSENT

    def test_schedules_and_propagates(
        self, run_manager, host, members, deployment_type
    ) -> None:
        host(REPLICA_SCHEDULING.preference_resource).create(_preference(total=4))
        host(deployment_type.federated_type).create(_fed_object())
        run_manager(TypeRegistry([deployment_type]))

        def propagated() -> bool:
            try:
                return all(
                    members[c](deployment_type.target).get("ns", "web")["spec"]["replicas"] == 2
                    for c in ("cluster-a", "cluster-b")
                )
            except NotFoundError:
                return False

        assert poll_until(propagated, interval=0.05, timeout=10)

    def test_wait_after_stop(self, host, registry, deployment_type) -> None:
        stop = threading.Event()
        manager = start_scheduling_manager(
            ControllerConfig.for_testing(),
            stop,
            type_registry=TypeRegistry([deployment_type]),
            host_factory=host,
            cluster_registry=registry,
        )
        assert self._running(manager, deployment_type.name)
        assert not manager.wait(0.01)
        stop.set()
        assert manager.wait(10)
        assert manager.type_state(deployment_type.name) == TypeState.ABSENT
        assert manager.get_scheduler(RSP) is None
