"""SchedulingManager: starts and stops schedulers and sync controllers per type.

Watches the :class:`TypeRegistry`.  For every type config that names a
known scheduling preference kind it runs:

- the Scheduler for that kind (shared by all types using the kind), with a
  plugin for the type
- a SyncController for the type

Each type moves through ``absent -> starting -> running -> stopping ->
absent``.  Type events are serialized through a single-worker queue, so
start and stop of the same type never overlap.  A type reaches ``absent``
only after its plugin and sync controller have stopped, and a scheduler
left with no plugins is stopped and removed before that point.

Usage::

    manager = start_scheduling_manager(
        config, stop_event,
        type_registry=registry, host_factory=host, cluster_registry=clusters,
    )
    manager.get_scheduler("ReplicaSchedulingPreference").has_plugin("deployments.apps")
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Hashable
from dataclasses import dataclass

from kubefed.client.resource import ClientFactory
from kubefed.cluster import ClusterRegistry
from kubefed.config import ControllerConfig
from kubefed.models import FederatedTypeConfig, ReconciliationStatus
from kubefed.scheduling.scheduler import Scheduler
from kubefed.scheduling.types import SchedulingKind, SchedulingTypes, default_scheduling_types
from kubefed.sync.controller import SyncController, start_sync_controller
from kubefed.typeregistry import TypeConfigEvent, TypeRegistry
from kubefed.util.worker import ReconcileWorker

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30.0


class TypeState(enum.StrEnum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class _TypeHandle:
    type_config: FederatedTypeConfig
    kind: SchedulingKind
    stop_event: threading.Event
    state: TypeState = TypeState.STARTING
    sync_controller: SyncController | None = None


@dataclass
class _SchedulerHandle:
    scheduler: Scheduler
    stop_event: threading.Event


class SchedulingManager:
    """Meta-controller keeping one scheduler plugin + sync controller per type."""

    def __init__(
        self,
        config: ControllerConfig,
        type_registry: TypeRegistry,
        host_factory: ClientFactory,
        cluster_registry: ClusterRegistry,
        scheduling_types: SchedulingTypes | None = None,
    ) -> None:
        self._config = config
        self._registry = type_registry
        self._host_factory = host_factory
        self._clusters = cluster_registry
        self._scheduling_types = scheduling_types or default_scheduling_types()
        self._lock = threading.Lock()
        self._types: dict[str, _TypeHandle] = {}
        self._schedulers: dict[str, _SchedulerHandle] = {}
        self._worker = ReconcileWorker(
            name="scheduling-manager",
            reconcile=self.reconcile,
            timing=config.timing,
            worker_count=1,
        )
        self._shutdown_thread: threading.Thread | None = None
        self._stopped = threading.Event()

    # --- Lifecycle ---

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Starting scheduling manager")
        self._registry.add_listener(self._on_type_event)
        for tc in self._registry.list():
            self._worker.enqueue(tc.name)
        self._worker.run(stop_event)
        self._shutdown_thread = threading.Thread(
            target=self._shutdown_on,
            args=(stop_event,),
            name="scheduling-manager-shutdown",
            daemon=True,
        )
        self._shutdown_thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the manager and everything it started have stopped."""
        return self._stopped.wait(timeout)

    def _shutdown_on(self, stop_event: threading.Event) -> None:
        stop_event.wait()
        self._registry.remove_listener(self._on_type_event)
        self._worker.stop()
        self._worker.wait(STOP_TIMEOUT)
        with self._lock:
            names = list(self._types)
        for name in names:
            self._stop_type(name)
        self._stopped.set()
        logger.info("Scheduling manager stopped")

    # --- Queries ---

    def get_scheduler(self, kind: str) -> Scheduler | None:
        with self._lock:
            handle = self._schedulers.get(kind)
            return None if handle is None else handle.scheduler

    def type_state(self, type_name: str) -> TypeState:
        with self._lock:
            handle = self._types.get(type_name)
            return TypeState.ABSENT if handle is None else handle.state

    def sync_controller(self, type_name: str) -> SyncController | None:
        with self._lock:
            handle = self._types.get(type_name)
            return None if handle is None else handle.sync_controller

    # --- Events ---

    def _on_type_event(self, event: TypeConfigEvent, type_config: FederatedTypeConfig) -> None:
        self._worker.enqueue(type_config.name)

    # --- Reconcile ---

    def reconcile(self, key: Hashable) -> ReconciliationStatus:
        name = str(key)
        type_config = self._registry.get(name)
        kind = self._scheduling_kind(type_config)

        with self._lock:
            handle = self._types.get(name)

        if kind is None or type_config is None:
            if handle is not None:
                self._stop_type(name)
            return ReconciliationStatus.ALL_OK

        if handle is not None:
            if handle.type_config == type_config and handle.state == TypeState.RUNNING:
                return ReconciliationStatus.ALL_OK
            logger.info("Type config %s changed; restarting its controllers", name)
            self._stop_type(name)

        try:
            self._start_type(type_config, kind)
        except Exception:
            logger.exception("Failed to start controllers for %s", name)
            self._stop_type(name)
            return ReconciliationStatus.ERROR
        return ReconciliationStatus.ALL_OK

    def _scheduling_kind(self, type_config: FederatedTypeConfig | None) -> SchedulingKind | None:
        if type_config is None or not type_config.scheduling_preference_kind:
            return None
        kind = self._scheduling_types.get(type_config.scheduling_preference_kind)
        if kind is None:
            logger.warning(
                "Type %s names unknown scheduling kind %s",
                type_config.name,
                type_config.scheduling_preference_kind,
            )
        return kind

    def _start_type(self, type_config: FederatedTypeConfig, kind: SchedulingKind) -> None:
        handle = _TypeHandle(type_config=type_config, kind=kind, stop_event=threading.Event())
        with self._lock:
            self._types[type_config.name] = handle
            scheduler_handle = self._schedulers.get(kind.kind)

        if scheduler_handle is None:
            scheduler_handle = _SchedulerHandle(
                scheduler=Scheduler(kind, self._config, self._host_factory, self._clusters),
                stop_event=threading.Event(),
            )
            scheduler_handle.scheduler.run(scheduler_handle.stop_event)
            with self._lock:
                self._schedulers[kind.kind] = scheduler_handle

        scheduler_handle.scheduler.start_plugin(type_config)
        sync_controller = start_sync_controller(
            self._config,
            type_config,
            handle.stop_event,
            host_factory=self._host_factory,
            cluster_registry=self._clusters,
            namespace_type_config=self._namespace_type_config(),
        )
        with self._lock:
            handle.sync_controller = sync_controller
            handle.state = TypeState.RUNNING
        logger.info("Controllers for %s running", type_config.name)

    def _stop_type(self, name: str) -> None:
        with self._lock:
            handle = self._types.get(name)
            if handle is None:
                return
            handle.state = TypeState.STOPPING
            scheduler_handle = self._schedulers.get(handle.kind.kind)

        if scheduler_handle is not None:
            scheduler = scheduler_handle.scheduler
            scheduler.stop_plugin(name, STOP_TIMEOUT)
            if not scheduler.plugin_names():
                scheduler_handle.stop_event.set()
                if not scheduler.wait(STOP_TIMEOUT):
                    logger.warning("Scheduler %s did not stop in time", handle.kind.kind)
                with self._lock:
                    if self._schedulers.get(handle.kind.kind) is scheduler_handle:
                        del self._schedulers[handle.kind.kind]

        handle.stop_event.set()
        if handle.sync_controller is not None and not handle.sync_controller.wait(STOP_TIMEOUT):
            logger.warning("Sync controller for %s did not stop in time", name)

        with self._lock:
            if self._types.get(name) is handle:
                del self._types[name]
        logger.info("Controllers for %s stopped", name)

    def _namespace_type_config(self) -> FederatedTypeConfig | None:
        for tc in self._registry.list():
            if tc.target_is_namespace:
                return tc
        return None


def start_scheduling_manager(
    config: ControllerConfig,
    stop_event: threading.Event,
    *,
    type_registry: TypeRegistry,
    host_factory: ClientFactory,
    cluster_registry: ClusterRegistry,
    scheduling_types: SchedulingTypes | None = None,
) -> SchedulingManager:
    """Create and start a SchedulingManager."""
    manager = SchedulingManager(
        config,
        type_registry,
        host_factory,
        cluster_registry,
        scheduling_types=scheduling_types,
    )
    manager.run(stop_event)
    return manager
