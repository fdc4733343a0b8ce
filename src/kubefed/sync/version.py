"""VersionManager: per-cluster versions last propagated for each federated object.

For every federated object the manager keeps a PropagatedVersion record
named ``<lowercased target kind>-<name>`` holding the template and override
versions the cluster versions were computed for, plus the resourceVersion
last written to or observed in each member cluster.

Reads come from an in-memory map loaded by :meth:`VersionManager.sync`.
Updates change the map immediately and queue the key for a background
writer, so callers never block on the API.  Bursts of updates for one key
collapse into a single write of the latest value.  Deletes are
synchronous because callers use them to gate removal of the federated
object itself.

Usage::

    manager = VersionManager(client, target_kind="Deployment", namespace="")
    manager.sync(stop_event)
    versions = manager.get(resource)            # {} if template changed
    manager.update(resource, selected, version_map)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any, Protocol

from kubefed.client.errors import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from kubefed.client.resource import ResourceClient
from kubefed.models import (
    APIResource,
    ClusterObjectVersion,
    PropagatedVersion,
    PropagatedVersionStatus,
    QualifiedName,
)
from kubefed.util import unstructured
from kubefed.util.retry import Backoff, retry_on

logger = logging.getLogger(__name__)

WRITE_BACKOFF = Backoff(initial=0.1, factor=2.0, max_delay=5.0, steps=8)
SYNC_RETRY_DELAY = 1.0

PROPAGATED_VERSION = APIResource(
    group="core.kubefed.io",
    version="v1alpha1",
    kind="PropagatedVersion",
    pluralName="propagatedversions",
)
CLUSTER_PROPAGATED_VERSION = APIResource(
    group="core.kubefed.io",
    version="v1alpha1",
    kind="ClusterPropagatedVersion",
    pluralName="clusterpropagatedversions",
    namespaced=False,
)


class VersionedResource(Protocol):
    """What the manager needs to know about a federated object."""

    @property
    def federated_name(self) -> QualifiedName: ...

    @property
    def object(self) -> dict[str, Any]: ...

    def template_version(self) -> str: ...

    def override_version(self) -> str: ...


def version_name(target_kind: str, name: str) -> str:
    return f"{target_kind.lower()}-{name}"


def owner_reference(obj: dict[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata") or {}
    return {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
    }


def _to_cluster_versions(version_map: dict[str, str]) -> list[ClusterObjectVersion]:
    # An empty version marks a cluster that may hold a copy of unknown version.
    return [
        ClusterObjectVersion(cluster_name=cluster, version=version)
        for cluster, version in sorted(version_map.items())
    ]


class VersionManager:
    """Tracks and persists PropagatedVersion records for one target kind."""

    def __init__(
        self,
        client: ResourceClient,
        target_kind: str,
        namespace: str = "",
        backoff: Backoff = WRITE_BACKOFF,
    ) -> None:
        self._client = client
        self._target_kind = target_kind
        self._namespace = namespace
        self._backoff = backoff
        self._prefix = f"{target_kind.lower()}-"

        self._lock = threading.Lock()
        self._versions: dict[QualifiedName, PropagatedVersion] = {}

        self._cond = threading.Condition(self._lock)
        self._pending: dict[QualifiedName, None] = {}
        self._writing = 0
        self._write_lock = threading.Lock()

        self._synced = threading.Event()
        self._stop: threading.Event = threading.Event()
        self._worker: threading.Thread | None = None

    # --- Lifecycle ---

    def sync(self, stop_event: threading.Event) -> bool:
        """Load existing records and start the writer.

        Lists until it succeeds.  Returns False if *stop_event* fired first.
        """
        self._stop = stop_event
        while True:
            try:
                objects = self._client.list(self._namespace)
                break
            except ApiError:
                logger.exception("Failed to list propagated versions for %s", self._target_kind)
                if stop_event.wait(SYNC_RETRY_DELAY):
                    return False

        with self._lock:
            for obj in objects:
                if not unstructured.get_name(obj).startswith(self._prefix):
                    continue
                record = PropagatedVersion.from_object(obj)
                self._versions[QualifiedName(record.namespace, record.name)] = record
            loaded = len(self._versions)

        logger.debug("Loaded %d propagated versions for %s", loaded, self._target_kind)
        self._worker = threading.Thread(
            target=self._run_writer,
            name=f"version-writer-{self._target_kind.lower()}",
            daemon=True,
        )
        self._worker.start()
        self._synced.set()
        return True

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued write has been attempted."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._pending and self._writing == 0, timeout
            )

    def wait(self, timeout: float | None = None) -> bool:
        """Join the writer thread (after the stop event has been set)."""
        if self._worker is None:
            return True
        self._worker.join(timeout)
        return not self._worker.is_alive()

    # --- Reads ---

    def version_key(self, federated_name: QualifiedName) -> QualifiedName:
        return QualifiedName(
            federated_name.namespace, version_name(self._target_kind, federated_name.name)
        )

    def get(self, resource: VersionedResource) -> dict[str, str]:
        """Recorded cluster versions, provided template and overrides are unchanged."""
        key = self.version_key(resource.federated_name)
        with self._lock:
            record = self._versions.get(key)
            if record is None:
                return {}
            status = record.status
            if (
                status.template_version != resource.template_version()
                or status.override_version != resource.override_version()
            ):
                return {}
            return status.version_map()

    def recorded_clusters(self, federated_name: QualifiedName) -> dict[str, str]:
        """Cluster versions recorded for *federated_name*, whatever the template version."""
        with self._lock:
            record = self._versions.get(self.version_key(federated_name))
            return {} if record is None else record.status.version_map()

    # --- Writes ---

    def update(
        self,
        resource: VersionedResource,
        selected_clusters: Iterable[str],
        version_map: dict[str, str],
        retained_clusters: Iterable[str] = (),
    ) -> None:
        """Record *version_map* for *resource* and queue a write.

        Clusters in *retained_clusters* were not reached in this pass and may
        still hold a copy.  They stay in the record so that deletion can find
        them; if the template or overrides changed their version is cleared,
        which forces an update once they are reachable again.
        """
        template_version = resource.template_version()
        override_version = resource.override_version()
        key = self.version_key(resource.federated_name)
        selected = set(selected_clusters)
        retained = set(retained_clusters)

        with self._lock:
            record = self._versions.get(key)
            new_versions = dict(version_map)
            if record is not None:
                old = record.status
                unchanged = (
                    old.template_version == template_version
                    and old.override_version == override_version
                )
                for cluster, version in old.version_map().items():
                    if cluster in new_versions:
                        continue
                    if unchanged and (cluster in selected or cluster in retained):
                        new_versions[cluster] = version
                    elif cluster in retained:
                        new_versions[cluster] = ""
            elif not new_versions:
                return

            status = PropagatedVersionStatus(
                template_version=template_version,
                override_version=override_version,
                cluster_versions=_to_cluster_versions(new_versions),
            )
            if record is not None and record.status == status:
                logger.debug("No version update necessary for %s", key)
                return
            if record is None:
                self._versions[key] = PropagatedVersion(
                    namespace=key.namespace,
                    name=key.name,
                    owner_references=[owner_reference(resource.object)],
                    status=status,
                )
            else:
                record.status = status
            self._enqueue_locked(key)

    def remove_clusters(self, federated_name: QualifiedName, clusters: Iterable[str]) -> None:
        """Forget *clusters* once their copies are gone; delete the record when empty."""
        key = self.version_key(federated_name)
        removed = set(clusters)
        with self._lock:
            record = self._versions.get(key)
            if record is None:
                return
            remaining = [
                cv for cv in record.status.cluster_versions if cv.cluster_name not in removed
            ]
            if remaining:
                if remaining != record.status.cluster_versions:
                    record.status = record.status.model_copy(
                        update={"cluster_versions": remaining}
                    )
                    self._enqueue_locked(key)
                return
        self.delete(federated_name)

    def delete(self, federated_name: QualifiedName) -> None:
        """Delete the record for *federated_name*; returns once the API confirms.

        Raises ``ApiError`` if the delete keeps failing.
        """
        key = self.version_key(federated_name)
        with self._lock:
            self._versions.pop(key, None)
            self._pending.pop(key, None)

        # Wait out any in-flight write so it cannot recreate the record.
        with self._write_lock:
            try:
                retry_on(
                    (ApiError,),
                    lambda: self._client.delete(key.namespace, key.name),
                    self._backoff,
                    should_retry=lambda e: not isinstance(e, NotFoundError | ForbiddenError),
                )
            except NotFoundError:
                pass
        logger.debug("Deleted propagated version %s", key)

    # --- Writer ---

    def _enqueue_locked(self, key: QualifiedName) -> None:
        self._pending[key] = None
        self._cond.notify_all()

    def _run_writer(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._stop.is_set():
                    self._cond.wait(0.1)
                if self._stop.is_set():
                    if self._pending:
                        logger.info(
                            "Dropping %d pending propagated version write(s) for %s",
                            len(self._pending),
                            self._target_kind,
                        )
                    return
                key = next(iter(self._pending))
                del self._pending[key]
                self._writing += 1
            try:
                self._write_version(key)
            except Exception:
                logger.exception("Unexpected error writing propagated version %s", key)
            finally:
                with self._cond:
                    self._writing -= 1
                    self._cond.notify_all()

    def _write_version(self, key: QualifiedName) -> None:
        with self._write_lock:
            with self._lock:
                record = self._versions.get(key)
                if record is None:
                    return
                snapshot = record.model_copy(deep=True)

            api_resource = self._client.api_resource
            state = {"resource_version": snapshot.resource_version, "refresh": False}

            def attempt() -> str:
                if state["refresh"]:
                    state["refresh"] = False
                    state["resource_version"] = self._fetch_resource_version(key)

                if not state["resource_version"]:
                    body = snapshot.model_copy(update={"resource_version": ""})
                    try:
                        created = self._client.create(body.to_object(api_resource))
                    except AlreadyExistsError:
                        state["refresh"] = True
                        raise
                    state["resource_version"] = unstructured.get_resource_version(created)
                    if created.get("status") == snapshot.status.to_dict():
                        return state["resource_version"]

                body = snapshot.model_copy(update={"resource_version": state["resource_version"]})
                try:
                    updated = self._client.update_status(body.to_object(api_resource))
                except ConflictError:
                    state["refresh"] = True
                    raise
                except NotFoundError:
                    state["resource_version"] = ""
                    raise
                return unstructured.get_resource_version(updated)

            try:
                resource_version = retry_on(
                    (ApiError,),
                    attempt,
                    self._backoff,
                    stop_event=self._stop,
                    should_retry=lambda e: not isinstance(e, ForbiddenError),
                )
            except ForbiddenError:
                logger.error("Forbidden to write propagated version %s; dropping update", key)
                return
            except ApiError:
                logger.exception("Failed to write propagated version %s; will retry", key)
                if not self._stop.wait(self._backoff.max_delay):
                    with self._lock:
                        if key in self._versions:
                            self._enqueue_locked(key)
                return

            with self._lock:
                current = self._versions.get(key)
                if current is not None:
                    current.resource_version = resource_version

    def _fetch_resource_version(self, key: QualifiedName) -> str:
        try:
            obj = self._client.get(key.namespace, key.name)
        except NotFoundError:
            return ""
        return unstructured.get_resource_version(obj)
