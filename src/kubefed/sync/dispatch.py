"""Concurrent per-cluster operations for one reconcile pass.

Each create/update/delete is submitted to a shared thread pool.  Outcomes
are collected into a per-cluster status map and a per-cluster version map
(the resourceVersion the object has in that cluster after the write).
``wait`` bounds the whole pass by the operation timeout; clusters whose
operation has not finished by then are reported as timed out.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, wait
from typing import Any

from kubefed.client.errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError
from kubefed.client.resource import ResourceClient
from kubefed.models import QualifiedName
from kubefed.sync.status import PropagationStatus
from kubefed.util import unstructured
from kubefed.util.retry import ONE_RETRY, retry_on

logger = logging.getLogger(__name__)

# Fields owned by the member cluster that a full update must carry over.
RETAINED_METADATA = ("finalizers", "ownerReferences")


def retain_cluster_fields(desired: dict[str, Any], cluster_obj: dict[str, Any]) -> None:
    meta = desired.setdefault("metadata", {})
    cluster_meta = cluster_obj.get("metadata") or {}
    meta["resourceVersion"] = cluster_meta.get("resourceVersion", "")
    for field_name in RETAINED_METADATA:
        if field_name in cluster_meta and field_name not in meta:
            meta[field_name] = cluster_meta[field_name]


class ManagedDispatcher:
    """Dispatches operations for one federated object to member clusters."""

    def __init__(self, executor: Executor, timeout: float, federated_name: QualifiedName) -> None:
        self._executor = executor
        self._timeout = timeout
        self._federated_name = federated_name
        self._lock = threading.Lock()
        self._futures: dict[str, tuple[Future[None], PropagationStatus]] = {}
        self._status: dict[str, PropagationStatus] = {}
        self._versions: dict[str, str] = {}
        self._deleted: set[str] = set()

    # --- Operations ---

    def create(self, cluster: str, client: ResourceClient, desired: dict[str, Any]) -> None:
        self._submit(
            cluster,
            PropagationStatus.CREATION_TIMED_OUT,
            lambda: self._create(cluster, client, desired),
        )

    def update(
        self,
        cluster: str,
        client: ResourceClient,
        desired: dict[str, Any],
        cluster_obj: dict[str, Any],
    ) -> None:
        self._submit(
            cluster,
            PropagationStatus.UPDATE_TIMED_OUT,
            lambda: self._update(cluster, client, desired, cluster_obj),
        )

    def delete(self, cluster: str, client: ResourceClient, target: QualifiedName) -> None:
        self._submit(
            cluster,
            PropagationStatus.DELETION_TIMED_OUT,
            lambda: self._delete(cluster, client, target),
        )

    # --- Results ---

    def record_status(self, cluster: str, status: PropagationStatus) -> None:
        with self._lock:
            self._status[cluster] = status

    def record_version(self, cluster: str, version: str) -> None:
        with self._lock:
            self._versions[cluster] = version

    def wait(self) -> bool:
        """Wait for all operations.  Returns True if every one succeeded."""
        with self._lock:
            futures = dict(self._futures)
        _, not_done = wait([f for f, _ in futures.values()], timeout=self._timeout)
        ok = True
        for cluster, (future, timeout_status) in futures.items():
            if future in not_done:
                logger.warning(
                    "Operation on %s in cluster %s timed out", self._federated_name, cluster
                )
                self.record_status(cluster, timeout_status)
                ok = False
        with self._lock:
            return ok and all(s == PropagationStatus.OK for s in self._status.values())

    def status_map(self) -> dict[str, PropagationStatus]:
        with self._lock:
            return dict(self._status)

    def version_map(self) -> dict[str, str]:
        with self._lock:
            return dict(self._versions)

    def deleted_clusters(self) -> set[str]:
        """Clusters where the object is now confirmed absent."""
        with self._lock:
            return set(self._deleted)

    # --- Private ---

    def _submit(
        self,
        cluster: str,
        timeout_status: PropagationStatus,
        operation: Callable[[], None],
    ) -> None:
        future = self._executor.submit(operation)
        with self._lock:
            self._futures[cluster] = (future, timeout_status)

    def _create(self, cluster: str, client: ResourceClient, desired: dict[str, Any]) -> None:
        try:
            created = client.create(desired)
        except AlreadyExistsError:
            # Adopt the existing object.
            try:
                existing = client.get(
                    unstructured.get_namespace(desired), unstructured.get_name(desired)
                )
            except ApiError:
                logger.exception("Failed to read existing %s in %s", self._federated_name, cluster)
                self.record_status(cluster, PropagationStatus.CREATION_FAILED)
                return
            self._update(cluster, client, desired, existing)
            return
        except ApiError:
            logger.exception("Failed to create %s in cluster %s", self._federated_name, cluster)
            self.record_status(cluster, PropagationStatus.CREATION_FAILED)
            return
        logger.debug("Created %s in cluster %s", self._federated_name, cluster)
        self.record_version(cluster, unstructured.get_resource_version(created))
        self.record_status(cluster, PropagationStatus.OK)

    def _update(
        self,
        cluster: str,
        client: ResourceClient,
        desired: dict[str, Any],
        cluster_obj: dict[str, Any],
    ) -> None:
        namespace = unstructured.get_namespace(desired)
        name = unstructured.get_name(desired)
        current = {"obj": cluster_obj, "refetch": False}

        def attempt() -> dict[str, Any]:
            if current["refetch"]:
                current["obj"] = client.get(namespace, name)
            current["refetch"] = True
            body = unstructured.deep_copy(desired)
            retain_cluster_fields(body, current["obj"])
            return client.update(body)

        try:
            updated = retry_on((ConflictError,), attempt, ONE_RETRY)
        except NotFoundError:
            body = unstructured.deep_copy(desired)
            unstructured.remove_nested(body, "metadata", "resourceVersion")
            self._create(cluster, client, body)
            return
        except ApiError:
            logger.exception("Failed to update %s in cluster %s", self._federated_name, cluster)
            self.record_status(cluster, PropagationStatus.UPDATE_FAILED)
            return
        logger.debug("Updated %s in cluster %s", self._federated_name, cluster)
        self.record_version(cluster, unstructured.get_resource_version(updated))
        self.record_status(cluster, PropagationStatus.OK)

    def _delete(self, cluster: str, client: ResourceClient, target: QualifiedName) -> None:
        try:
            client.delete(target.namespace, target.name)
        except NotFoundError:
            pass
        except ApiError:
            logger.exception("Failed to delete %s from cluster %s", self._federated_name, cluster)
            self.record_status(cluster, PropagationStatus.DELETION_FAILED)
            return
        logger.debug("Deleted %s from cluster %s", self._federated_name, cluster)
        with self._lock:
            self._deleted.add(cluster)
