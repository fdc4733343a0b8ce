"""Scheduler: the controller shell around the planner for one preference kind.

One Scheduler runs per scheduling kind (e.g. ReplicaSchedulingPreference)
and holds one :class:`Plugin` per federated type using that kind.  A
preference key is reconciled when the preference changes, when the
federated object of the same name changes, or when cluster readiness
changes (which requeues every preference).
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
from kubefed.scheduling.planner import schedule
from kubefed.scheduling.plugin import Plugin
from kubefed.scheduling.types import PlanError, SchedulingKind, SchedulingPreference
from kubefed.util.informer import Informer
from kubefed.util.worker import ReconcileWorker

logger = logging.getLogger(__name__)

RECONCILE_ALL = "reconcile-all"


class Scheduler:
    """Schedules every preference object of one kind."""

    def __init__(
        self,
        kind: SchedulingKind,
        config: ControllerConfig,
        host_factory: ClientFactory,
        cluster_registry: ClusterRegistry,
    ) -> None:
        self._kind = kind
        self._config = config
        self._host_factory = host_factory
        self._clusters = cluster_registry
        self._pref_client = host_factory(kind.preference_resource)
        self._worker = ReconcileWorker(
            name=f"scheduler-{kind.kind}",
            reconcile=self.reconcile,
            timing=config.timing,
            worker_count=config.worker_count,
        )
        self._informer = Informer(
            self._pref_client,
            self._on_preference_event,
            namespace=config.target_namespace,
            name=f"scheduler-{kind.kind}-informer",
        )
        self._lock = threading.Lock()
        self._plugins: dict[str, Plugin] = {}
        self._stop_event = threading.Event()

    @property
    def kind(self) -> SchedulingKind:
        return self._kind

    # --- Lifecycle ---

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Starting scheduler for %s", self._kind.kind)
        self._stop_event = stop_event
        self._clusters.add_listener(self._on_cluster_event)
        self._informer.run(stop_event)
        self._worker.run(stop_event)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the worker threads to exit after the stop event has been set."""
        self._clusters.remove_listener(self._on_cluster_event)
        with self._lock:
            plugins = list(self._plugins.values())
            self._plugins.clear()
        for plugin in plugins:
            plugin.stop(timeout)
        self._worker.stop()
        stopped = self._worker.wait(timeout)
        self._informer.stop(timeout)
        logger.info("Scheduler for %s stopped", self._kind.kind)
        return stopped

    # --- Plugins ---

    def start_plugin(self, type_config: FederatedTypeConfig) -> None:
        with self._lock:
            if type_config.name in self._plugins:
                return
            plugin = Plugin(
                type_config,
                self._host_factory(type_config.federated_type),
                self._kind.paths,
                self._worker.enqueue,
                namespace=self._config.target_namespace,
            )
            self._plugins[type_config.name] = plugin
        plugin.run(self._stop_event)
        self._worker.enqueue(RECONCILE_ALL)
        logger.info("Scheduler %s: started plugin for %s", self._kind.kind, type_config.name)

    def stop_plugin(self, type_name: str, timeout: float | None = None) -> None:
        with self._lock:
            plugin = self._plugins.pop(type_name, None)
        if plugin is not None:
            plugin.stop(timeout)
            logger.info("Scheduler %s: stopped plugin for %s", self._kind.kind, type_name)

    def has_plugin(self, type_name: str) -> bool:
        with self._lock:
            return type_name in self._plugins

    def plugin_names(self) -> list[str]:
        with self._lock:
            return sorted(self._plugins)

    def _plugin_for(self, federated_kind: str) -> Plugin | None:
        with self._lock:
            for plugin in self._plugins.values():
                if plugin.type_config.federated_type.kind == federated_kind:
                    return plugin
        return None

    # --- Events ---

    def _on_preference_event(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        self._worker.enqueue(QualifiedName.from_object(obj))

    def _on_cluster_event(self, cluster: str, event: ClusterEvent) -> None:
        health = self._config.cluster_health
        if event in (ClusterEvent.REMOVED, ClusterEvent.BECAME_UNREADY):
            delay = health.cluster_unavailable_delay
        else:
            delay = health.cluster_available_delay
        self._worker.enqueue_after(RECONCILE_ALL, delay)

    # --- Reconcile ---

    def reconcile(self, key: Hashable) -> ReconciliationStatus:
        if key == RECONCILE_ALL:
            return self._reconcile_all()

        try:
            obj = self._pref_client.get(key.namespace, key.name)
        except NotFoundError:
            return ReconciliationStatus.ALL_OK
        except ApiError:
            logger.exception("Failed to retrieve %s %s", self._kind.kind, key)
            return ReconciliationStatus.ERROR

        try:
            preference = SchedulingPreference.from_object(obj, self._kind)
        except PlanError as exc:
            logger.error("Invalid %s %s: %s", self._kind.kind, key, exc)
            return ReconciliationStatus.NEEDS_RECHECK

        plugin = self._plugin_for(preference.target_kind)
        if plugin is None:
            logger.debug("No plugin for %s targeted by %s", preference.target_kind, key)
            return ReconciliationStatus.ALL_OK

        ready = [c.name for c in self._clusters.ready_clusters()]
        if not ready:
            logger.debug("No ready clusters; not scheduling %s", key)
            return ReconciliationStatus.ALL_OK

        return plugin.reconcile(key, schedule(preference, ready))

    def _reconcile_all(self) -> ReconciliationStatus:
        try:
            objects = self._pref_client.list(self._config.target_namespace)
        except ApiError:
            logger.exception("Failed to list %s objects", self._kind.kind)
            return ReconciliationStatus.ERROR
        for obj in objects:
            self._worker.enqueue(QualifiedName.from_object(obj))
        return ReconciliationStatus.ALL_OK
