"""ClusterStatusController: collects member cluster status for one federated type.

For every federated object of a status-enabled type the controller reads
the ``status`` of the managed target object in each ready member cluster
and writes the results, sorted by cluster name, into a companion
``<FederatedKind>Status`` object on the host::

    apiVersion: types.kubefed.io/v1beta1
    kind: FederatedDeploymentStatus
    metadata:
      namespace: ns
      name: web
      ownerReferences: [...]   # the FederatedDeployment
    clusterStatus:
      - clusterName: cluster-a
        status: {replicas: 2, readyReplicas: 2}
      - clusterName: cluster-b   # no copy, or no status yet

The companion object is only rewritten when the collected list changes,
and is deleted once its federated object is gone.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from typing import Any

from kubefed.client.errors import ApiError, NotFoundError
from kubefed.client.resource import ClientFactory, WatchEventType
from kubefed.cluster import ClusterEvent, ClusterRegistry
from kubefed.config import ControllerConfig
from kubefed.models import FederatedTypeConfig, QualifiedName, ReconciliationStatus
from kubefed.sync.resource import target_name_for
from kubefed.sync.version import owner_reference
from kubefed.util import unstructured
from kubefed.util.informer import Informer
from kubefed.util.worker import ReconcileWorker

logger = logging.getLogger(__name__)

RECONCILE_ALL = "reconcile-all"


class ClusterStatusController:
    """Keeps the ``<FederatedKind>Status`` objects of one type up to date."""

    def __init__(
        self,
        config: ControllerConfig,
        type_config: FederatedTypeConfig,
        host_factory: ClientFactory,
        cluster_registry: ClusterRegistry,
    ) -> None:
        self._config = config
        self._type_config = type_config
        self._clusters = cluster_registry
        self._fed_client = host_factory(type_config.federated_type)
        self._status_client = host_factory(type_config.status_resource)
        self._worker = ReconcileWorker(
            name=f"status-{type_config.name}",
            reconcile=self.reconcile,
            timing=config.timing,
            worker_count=config.worker_count,
        )
        self._informers = [
            Informer(
                client,
                self._on_host_event,
                namespace=config.target_namespace,
                name=f"status-{type_config.name}-{suffix}",
            )
            for client, suffix in ((self._fed_client, "federated"), (self._status_client, "status"))
        ]
        self._cluster_informers: dict[str, Informer] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None

    @property
    def type_config(self) -> FederatedTypeConfig:
        return self._type_config

    @property
    def worker(self) -> ReconcileWorker:
        return self._worker

    # --- Lifecycle ---

    def run(self, stop_event: threading.Event) -> None:
        """Start collecting; returns immediately."""
        logger.info("Starting status controller for %s", self._type_config.name)
        self._stop_event = stop_event
        self._clusters.add_listener(self._on_cluster_event)
        for cluster in self._clusters.ready_clusters():
            self._start_cluster_informer(cluster.name)
        for informer in self._informers:
            informer.run(stop_event)
        self._worker.run(stop_event)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for every thread to exit after the stop event has been set."""
        self._clusters.remove_listener(self._on_cluster_event)
        self._worker.stop()
        stopped = self._worker.wait(timeout)
        with self._lock:
            informers = [*self._informers, *self._cluster_informers.values()]
            self._cluster_informers.clear()
        for informer in informers:
            informer.stop(timeout)
        logger.info("Status controller for %s stopped", self._type_config.name)
        return stopped

    # --- Event handlers ---

    def _on_host_event(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        self._worker.enqueue(QualifiedName.from_object(obj))

    def _on_cluster_object_event(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        if not unstructured.has_managed_label(obj):
            return
        name = QualifiedName.from_object(obj)
        if self._type_config.target_is_namespace:
            name = QualifiedName(name.name, name.name)
        self._worker.enqueue(name)

    def _on_cluster_event(self, cluster: str, event: ClusterEvent) -> None:
        health = self._config.cluster_health
        if event in (ClusterEvent.ADDED, ClusterEvent.BECAME_READY):
            snapshot = self._clusters.get(cluster)
            if snapshot is not None and snapshot.ready:
                self._start_cluster_informer(cluster)
            delay = health.cluster_available_delay
        elif event in (ClusterEvent.REMOVED, ClusterEvent.BECAME_UNREADY):
            self._stop_cluster_informer(cluster)
            delay = health.cluster_unavailable_delay
        else:
            return
        self._worker.enqueue_after(RECONCILE_ALL, delay)

    def _start_cluster_informer(self, cluster: str) -> None:
        stop_event = self._stop_event
        snapshot = self._clusters.get(cluster)
        if stop_event is None or snapshot is None:
            return
        with self._lock:
            if cluster in self._cluster_informers:
                return
            informer = Informer(
                snapshot.client(self._type_config.target),
                self._on_cluster_object_event,
                namespace=self._config.target_namespace,
                name=f"status-{self._type_config.name}-{cluster}",
            )
            self._cluster_informers[cluster] = informer
        informer.run(stop_event)

    def _stop_cluster_informer(self, cluster: str) -> None:
        with self._lock:
            informer = self._cluster_informers.pop(cluster, None)
        if informer is not None:
            informer.stop()

    # --- Reconcile ---

    def reconcile(self, key: Hashable) -> ReconciliationStatus:
        if key == RECONCILE_ALL:
            return self._reconcile_all()
        try:
            fed_object = self._fed_client.get(key.namespace, key.name)
        except NotFoundError:
            return self._delete_status(key)
        except ApiError:
            logger.exception("Failed to retrieve %s", key)
            return ReconciliationStatus.ERROR
        if unstructured.is_deleting(fed_object):
            return ReconciliationStatus.ALL_OK

        try:
            cluster_status = self.collect(key)
        except ApiError:
            logger.exception("Failed to collect cluster status of %s", key)
            return ReconciliationStatus.ERROR
        return self._write_status(key, fed_object, cluster_status)

    def collect(self, name: QualifiedName) -> list[dict[str, Any]]:
        """Status of the managed copy of *name* in every ready cluster."""
        target = target_name_for(self._type_config, name)
        result: list[dict[str, Any]] = []
        for cluster in self._clusters.ready_clusters():
            entry: dict[str, Any] = {"clusterName": cluster.name}
            client = cluster.client(self._type_config.target)
            try:
                obj = client.get(target.namespace, target.name)
            except NotFoundError:
                obj = None
            if obj is not None and unstructured.has_managed_label(obj):
                status = obj.get("status")
                if status:
                    entry["status"] = unstructured.deep_copy(status)
            result.append(entry)
        return result

    def _reconcile_all(self) -> ReconciliationStatus:
        try:
            objects = self._fed_client.list(self._config.target_namespace)
        except ApiError:
            logger.exception("Failed to list %s", self._type_config.federated_type.kind)
            return ReconciliationStatus.ERROR
        for obj in objects:
            self._worker.enqueue(QualifiedName.from_object(obj))
        return ReconciliationStatus.ALL_OK

    def _write_status(
        self,
        name: QualifiedName,
        fed_object: dict[str, Any],
        cluster_status: list[dict[str, Any]],
    ) -> ReconciliationStatus:
        kind = self._type_config.status_resource.kind
        try:
            existing: dict[str, Any] | None = self._status_client.get(name.namespace, name.name)
        except NotFoundError:
            existing = None
        except ApiError:
            logger.exception("Failed to retrieve %s %s", kind, name)
            return ReconciliationStatus.ERROR

        try:
            if existing is None:
                self._status_client.create(self._status_object(name, fed_object, cluster_status))
                logger.debug("Created %s %s", kind, name)
            elif existing.get("clusterStatus") != cluster_status:
                updated = unstructured.deep_copy(existing)
                updated["clusterStatus"] = cluster_status
                self._status_client.update(updated)
                logger.debug("Updated %s %s", kind, name)
        except ApiError:
            logger.exception("Failed to write %s %s", kind, name)
            return ReconciliationStatus.NEEDS_RECHECK
        return ReconciliationStatus.ALL_OK

    def _status_object(
        self,
        name: QualifiedName,
        fed_object: dict[str, Any],
        cluster_status: list[dict[str, Any]],
    ) -> dict[str, Any]:
        resource = self._type_config.status_resource
        meta: dict[str, Any] = {
            "name": name.name,
            "ownerReferences": [owner_reference(fed_object)],
        }
        if name.namespace:
            meta["namespace"] = name.namespace
        return {
            "apiVersion": resource.api_version,
            "kind": resource.kind,
            "metadata": meta,
            "clusterStatus": cluster_status,
        }

    def _delete_status(self, name: QualifiedName) -> ReconciliationStatus:
        try:
            self._status_client.delete(name.namespace, name.name)
        except NotFoundError:
            return ReconciliationStatus.ALL_OK
        except ApiError:
            logger.exception(
                "Failed to delete %s %s", self._type_config.status_resource.kind, name
            )
            return ReconciliationStatus.ERROR
        logger.debug("Deleted %s %s", self._type_config.status_resource.kind, name)
        return ReconciliationStatus.ALL_OK


def start_cluster_status_controller(
    config: ControllerConfig,
    type_config: FederatedTypeConfig,
    stop_event: threading.Event,
    *,
    host_factory: ClientFactory,
    cluster_registry: ClusterRegistry,
) -> ClusterStatusController:
    """Create and start a ClusterStatusController for *type_config*."""
    controller = ClusterStatusController(config, type_config, host_factory, cluster_registry)
    controller.run(stop_event)
    return controller
