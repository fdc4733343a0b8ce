"""SyncController: propagates one federated type to every member cluster.

Per federated object key the controller:

1. Fetches the federated object.  If it is gone, or marked for deletion,
   the copies recorded in its PropagatedVersion are deleted from their
   clusters, and the record is dropped once no cluster is left.
2. Resolves placement against the known clusters.
3. Renders the desired object for each selected cluster (template,
   overrides, managed label).
4. Skips clusters whose object still carries the resourceVersion recorded
   by the VersionManager.
5. Creates, updates or deletes concurrently through a ManagedDispatcher.
6. Records the resulting versions.
7. Writes the propagation status when the type has status enabled.

Keys are fed by a watch on the federated type, by watches on the target
kind in each member cluster (managed objects only) and by cluster
membership or readiness changes, which requeue every object.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kubefed.client.errors import ApiError, NotFoundError
from kubefed.client.resource import ClientFactory, ResourceClient, WatchEventType
from kubefed.cluster import ClusterEvent, ClusterRegistry
from kubefed.config import ControllerConfig
from kubefed.models import FederatedTypeConfig, QualifiedName, ReconciliationStatus
from kubefed.sync.dispatch import ManagedDispatcher
from kubefed.sync.resource import FederatedResource, target_name_for
from kubefed.sync.status import AggregateReason, PropagationStatus, aggregate_reason, build_status
from kubefed.sync.version import CLUSTER_PROPAGATED_VERSION, PROPAGATED_VERSION, VersionManager
from kubefed.util import unstructured
from kubefed.util.informer import Informer
from kubefed.util.overrides import OverrideError
from kubefed.util.placement import PlacementError
from kubefed.util.retry import retry_on_conflict
from kubefed.util.worker import ReconcileWorker

logger = logging.getLogger(__name__)

SYNC_FINALIZER = "kubefed.io/sync-controller"
RECONCILE_ALL = "reconcile-all"

# Statuses that do not need a retry of their own.
_SETTLED = frozenset({PropagationStatus.OK, PropagationStatus.CLUSTER_NOT_READY})


class SyncController:
    """Reconciles every object of one federated type into member clusters."""

    def __init__(
        self,
        config: ControllerConfig,
        type_config: FederatedTypeConfig,
        host_factory: ClientFactory,
        cluster_registry: ClusterRegistry,
        namespace_client: ResourceClient | None = None,
    ) -> None:
        self._config = config
        self._type_config = type_config
        self._clusters = cluster_registry
        self._namespace_client = namespace_client
        self._fed_client = host_factory(type_config.federated_type)

        version_resource = (
            PROPAGATED_VERSION if type_config.namespaced else CLUSTER_PROPAGATED_VERSION
        )
        self._version_manager = VersionManager(
            host_factory(version_resource),
            target_kind=type_config.target.kind,
            namespace=config.target_namespace,
        )
        self._worker = ReconcileWorker(
            name=f"sync-{type_config.name}",
            reconcile=self.reconcile,
            timing=config.timing,
            worker_count=config.worker_count,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(config.worker_count, 1) * 4,
            thread_name_prefix=f"sync-{type_config.name}-dispatch",
        )
        self._informer = Informer(
            self._fed_client,
            self._on_federated_event,
            namespace=config.target_namespace,
            name=f"sync-{type_config.name}-informer",
        )
        self._cluster_informers: dict[str, Informer] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._threads: list[threading.Thread] = []

    @property
    def type_config(self) -> FederatedTypeConfig:
        return self._type_config

    @property
    def version_manager(self) -> VersionManager:
        return self._version_manager

    @property
    def worker(self) -> ReconcileWorker:
        return self._worker

    # --- Lifecycle ---

    def run(self, stop_event: threading.Event) -> None:
        """Start syncing; returns immediately.  Work stops when *stop_event* is set."""
        logger.info("Starting sync controller for %s", self._type_config.name)
        self._stop_event = stop_event
        vm_thread = threading.Thread(
            target=self._version_manager.sync,
            args=(stop_event,),
            name=f"sync-{self._type_config.name}-versions",
            daemon=True,
        )
        vm_thread.start()
        self._threads.append(vm_thread)

        self._clusters.add_listener(self._on_cluster_event)
        for cluster in self._clusters.clusters():
            if cluster.ready:
                self._start_cluster_informer(cluster.name)

        self._informer.run(stop_event)
        self._worker.run(stop_event)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for every thread to exit after the stop event has been set."""
        self._clusters.remove_listener(self._on_cluster_event)
        self._worker.stop()
        stopped = self._worker.wait(timeout)
        self._informer.stop(timeout)
        with self._lock:
            informers = list(self._cluster_informers.values())
            self._cluster_informers.clear()
        for informer in informers:
            informer.stop(timeout)
        for t in self._threads:
            t.join(timeout)
        stopped = self._version_manager.wait(timeout) and stopped
        self._executor.shutdown(wait=True)
        logger.info("Sync controller for %s stopped", self._type_config.name)
        return stopped

    def enqueue(self, key: QualifiedName) -> None:
        self._worker.enqueue(key)

    # --- Event handlers ---

    def _on_federated_event(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
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
        elif event == ClusterEvent.REMOVED:
            self._stop_cluster_informer(cluster)
            delay = health.cluster_unavailable_delay
        elif event == ClusterEvent.BECAME_UNREADY:
            delay = health.cluster_unavailable_delay
        else:
            delay = health.cluster_available_delay
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
                name=f"sync-{self._type_config.name}-{cluster}",
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
        if not self._version_manager.has_synced():
            return ReconciliationStatus.NOT_SYNCED
        logger.debug("Reconciling %s %s", self._type_config.federated_type.kind, key)
        try:
            fed_object = self._fed_client.get(key.namespace, key.name)
        except NotFoundError:
            return self._delete_from_clusters(key)
        except ApiError:
            logger.exception("Failed to retrieve %s", key)
            return ReconciliationStatus.ERROR

        if unstructured.is_deleting(fed_object):
            return self._handle_deletion(fed_object)

        if not self._type_config.propagation_enabled:
            return ReconciliationStatus.ALL_OK

        try:
            fed_object = self._ensure_finalizer(fed_object)
            fed_namespace = self._federated_namespace(key.namespace)
        except NotFoundError:
            return ReconciliationStatus.ALL_OK
        except ApiError:
            logger.exception("Failed to prepare %s for propagation", key)
            return ReconciliationStatus.ERROR

        resource = FederatedResource(
            self._type_config,
            fed_object,
            fed_namespace=fed_namespace,
            # Without namespace placement the object's own placement applies as is.
            limited_scope=self._config.limited_scope or self._namespace_client is None,
        )
        return self._sync_to_clusters(resource)

    def _reconcile_all(self) -> ReconciliationStatus:
        try:
            objects = self._fed_client.list(self._config.target_namespace)
        except ApiError:
            logger.exception("Failed to list %s", self._type_config.federated_type.kind)
            return ReconciliationStatus.ERROR
        for obj in objects:
            self._worker.enqueue(QualifiedName.from_object(obj))
        return ReconciliationStatus.ALL_OK

    def _federated_namespace(self, namespace: str) -> dict[str, Any] | None:
        if self._namespace_client is None or not namespace:
            return None
        try:
            return self._namespace_client.get(namespace, namespace)
        except NotFoundError:
            return None

    def _sync_to_clusters(self, resource: FederatedResource) -> ReconciliationStatus:
        name = resource.federated_name
        clusters = self._clusters.clusters()

        try:
            selected = resource.compute_placement({c.name: c.labels for c in clusters})
        except (PlacementError, OverrideError) as exc:
            logger.error("Failed to compute placement for %s: %s", name, exc)
            self._write_status(resource, {}, AggregateReason.COMPUTE_PLACEMENT_FAILED)
            return ReconciliationStatus.ERROR

        reason: AggregateReason | None = None
        if not selected and self._namespace_not_federated(resource):
            reason = AggregateReason.NAMESPACE_NOT_FEDERATED

        expected_versions = self._version_manager.get(resource)
        target = resource.target_name
        dispatcher = ManagedDispatcher(self._executor, self._config.timing.operation_timeout, name)
        # Unselected clusters known to hold no managed copy.
        absent: set[str] = set()

        for cluster in clusters:
            is_selected = cluster.name in selected
            if not cluster.ready:
                if is_selected:
                    dispatcher.record_status(cluster.name, PropagationStatus.CLUSTER_NOT_READY)
                continue

            client = cluster.client(self._type_config.target)
            try:
                cluster_obj: dict[str, Any] | None = client.get(target.namespace, target.name)
            except NotFoundError:
                cluster_obj = None
            except ApiError:
                logger.exception("Failed to retrieve %s from cluster %s", target, cluster.name)
                dispatcher.record_status(cluster.name, PropagationStatus.RETRIEVAL_FAILED)
                continue

            if not is_selected:
                if cluster_obj is None or not unstructured.has_managed_label(cluster_obj):
                    absent.add(cluster.name)
                    continue
                if unstructured.is_deleting(cluster_obj):
                    dispatcher.record_status(cluster.name, PropagationStatus.WAITING_FOR_REMOVAL)
                    continue
                dispatcher.delete(cluster.name, client, target)
                continue

            try:
                desired = resource.object_for_cluster(cluster.name)
            except OverrideError as exc:
                logger.error("Failed to apply overrides for %s in %s: %s", name, cluster.name, exc)
                dispatcher.record_status(cluster.name, PropagationStatus.APPLY_OVERRIDES_FAILED)
                continue

            if cluster_obj is None:
                dispatcher.create(cluster.name, client, desired)
                continue

            recorded = expected_versions.get(cluster.name)
            if recorded and recorded == unstructured.get_resource_version(cluster_obj):
                dispatcher.record_status(cluster.name, PropagationStatus.OK)
                continue
            dispatcher.update(cluster.name, client, desired, cluster_obj)

        dispatcher.wait()
        versions = dispatcher.version_map()
        # Clusters not reached in this pass may still hold a copy.
        retained = {c.name for c in clusters} - absent - set(versions)
        retained -= dispatcher.deleted_clusters()
        self._version_manager.update(resource, selected, versions, retained)

        status_map = dispatcher.status_map()
        if reason is None:
            reason = aggregate_reason(status_map)
        self._write_status(resource, status_map, reason)

        statuses = set(status_map.values())
        if statuses - _SETTLED - {PropagationStatus.WAITING_FOR_REMOVAL}:
            return ReconciliationStatus.ERROR
        if PropagationStatus.WAITING_FOR_REMOVAL in statuses:
            return ReconciliationStatus.NEEDS_RECHECK
        return ReconciliationStatus.ALL_OK

    def _namespace_not_federated(self, resource: FederatedResource) -> bool:
        type_config = resource.type_config
        return (
            self._namespace_client is not None
            and type_config.namespaced
            and not type_config.target_is_namespace
            and not self._config.limited_scope
            and resource.fed_namespace is None
        )

    def _write_status(
        self,
        resource: FederatedResource,
        status_map: dict[str, PropagationStatus],
        reason: AggregateReason,
    ) -> None:
        if not self._type_config.status_enabled:
            return
        name = resource.federated_name
        current = {"obj": resource.object, "fresh": True}

        def attempt() -> None:
            if not current["fresh"]:
                current["obj"] = self._fed_client.get(name.namespace, name.name)
            current["fresh"] = False
            status = build_status(current["obj"], status_map, reason)
            if status is None:
                return
            obj = unstructured.deep_copy(current["obj"])
            obj["status"] = status
            self._fed_client.update_status(obj)

        try:
            retry_on_conflict(attempt)
        except NotFoundError:
            return
        except ApiError:
            logger.exception("Failed to update propagation status of %s", name)

    # --- Deletion ---

    def _ensure_finalizer(self, fed_object: dict[str, Any]) -> dict[str, Any]:
        if SYNC_FINALIZER in unstructured.get_finalizers(fed_object):
            return fed_object
        name = QualifiedName.from_object(fed_object)
        current = {"obj": fed_object, "fresh": True}

        def attempt() -> dict[str, Any]:
            if not current["fresh"]:
                current["obj"] = self._fed_client.get(name.namespace, name.name)
            current["fresh"] = False
            obj = unstructured.deep_copy(current["obj"])
            finalizers = unstructured.get_finalizers(obj)
            if SYNC_FINALIZER in finalizers:
                return obj
            unstructured.set_finalizers(obj, [*finalizers, SYNC_FINALIZER])
            return self._fed_client.update(obj)

        return retry_on_conflict(attempt)

    def _remove_finalizer(self, fed_object: dict[str, Any]) -> None:
        name = QualifiedName.from_object(fed_object)
        current = {"obj": fed_object, "fresh": True}

        def attempt() -> None:
            if not current["fresh"]:
                current["obj"] = self._fed_client.get(name.namespace, name.name)
            current["fresh"] = False
            obj = unstructured.deep_copy(current["obj"])
            finalizers = unstructured.get_finalizers(obj)
            if SYNC_FINALIZER not in finalizers:
                return
            unstructured.set_finalizers(obj, [f for f in finalizers if f != SYNC_FINALIZER])
            self._fed_client.update(obj)

        try:
            retry_on_conflict(attempt)
        except NotFoundError:
            pass

    def _handle_deletion(self, fed_object: dict[str, Any]) -> ReconciliationStatus:
        name = QualifiedName.from_object(fed_object)
        if unstructured.is_orphaning_enabled(fed_object):
            logger.info("Orphaning cluster copies of %s", name)
            try:
                self._version_manager.delete(name)
            except ApiError:
                logger.exception("Failed to delete propagated version of %s", name)
                return ReconciliationStatus.ERROR
            status = ReconciliationStatus.ALL_OK
        else:
            status = self._delete_from_clusters(name)
        if status != ReconciliationStatus.ALL_OK:
            return status
        try:
            self._remove_finalizer(fed_object)
        except ApiError:
            logger.exception("Failed to remove finalizer from %s", name)
            return ReconciliationStatus.ERROR
        return ReconciliationStatus.ALL_OK

    def _delete_from_clusters(self, name: QualifiedName) -> ReconciliationStatus:
        recorded = self._version_manager.recorded_clusters(name)
        target = target_name_for(self._type_config, name)
        dispatcher = ManagedDispatcher(self._executor, self._config.timing.operation_timeout, name)
        gone: set[str] = set()
        for cluster_name in sorted(recorded):
            cluster = self._clusters.get(cluster_name)
            if cluster is None:
                # Cluster left the federation; nothing left to delete there.
                gone.add(cluster_name)
                continue
            if not cluster.ready:
                continue
            dispatcher.delete(cluster_name, cluster.client(self._type_config.target), target)

        dispatcher.wait()
        gone |= dispatcher.deleted_clusters()
        try:
            self._version_manager.remove_clusters(name, gone)
        except ApiError:
            logger.exception("Failed to delete propagated version of %s", name)
            return ReconciliationStatus.ERROR

        if gone != set(recorded):
            logger.info(
                "%s still present in %s; will retry deletion",
                name,
                ", ".join(sorted(set(recorded) - gone)),
            )
            return ReconciliationStatus.ERROR
        return ReconciliationStatus.ALL_OK


def start_sync_controller(
    config: ControllerConfig,
    type_config: FederatedTypeConfig,
    stop_event: threading.Event,
    *,
    host_factory: ClientFactory,
    cluster_registry: ClusterRegistry,
    namespace_type_config: FederatedTypeConfig | None = None,
) -> SyncController:
    """Create and start a SyncController for *type_config*."""
    namespace_client = None
    if (
        namespace_type_config is not None
        and type_config.namespaced
        and not type_config.target_is_namespace
    ):
        namespace_client = host_factory(namespace_type_config.federated_type)
    controller = SyncController(
        config,
        type_config,
        host_factory,
        cluster_registry,
        namespace_client=namespace_client,
    )
    controller.run(stop_event)
    return controller
