"""In-memory resource client.

Behaves like a tiny API server for one kind: it assigns resource versions,
enforces optimistic concurrency on update, honours finalizers on delete and
fans out watch events.  Every call is recorded in ``actions`` so tests can
assert exactly which writes a controller performed, and ``fail`` injects
errors for the next N calls of a verb.

Usage::

    cluster = InMemoryCluster("cluster-a")
    deployments = cluster.client(APIResource(group="apps", kind="Deployment"))
    deployments.create({"metadata": {"namespace": "ns", "name": "web"}})
"""

from __future__ import annotations

import itertools
import queue
import threading
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from kubefed.client.errors import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    NotFoundError,
)
from kubefed.client.resource import WatchEvent, WatchEventType
from kubefed.models import APIResource
from kubefed.util import unstructured

WRITE_VERBS = frozenset({"create", "update", "update_status", "delete"})


class InMemoryResourceClient:
    """Thread-safe store of objects of one kind."""

    def __init__(
        self,
        api_resource: APIResource,
        _versions: Iterator[int] | None = None,
    ) -> None:
        self._api_resource = api_resource
        self._versions = _versions or itertools.count(1)
        self._lock = threading.Lock()
        self._objects: dict[tuple[str, str], dict[str, Any]] = {}
        self._watchers: list[queue.Queue[WatchEvent]] = []
        self._failures: dict[str, list[ApiError]] = {}
        self.actions: list[tuple[str, str, str]] = []

    @property
    def api_resource(self) -> APIResource:
        return self._api_resource

    # --- Test helpers ---

    def fail(self, verb: str, error: ApiError, times: int = 1) -> None:
        """Make the next *times* calls of *verb* raise *error*."""
        with self._lock:
            self._failures.setdefault(verb, []).extend([error] * times)

    def writes(self) -> list[tuple[str, str, str]]:
        """Recorded actions that mutate state."""
        with self._lock:
            return [a for a in self.actions if a[0] in WRITE_VERBS]

    def clear_actions(self) -> None:
        with self._lock:
            self.actions.clear()

    # --- ResourceClient ---

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        with self._lock:
            self._record("get", namespace, name)
            stored = self._objects.get((namespace, name))
            if stored is None:
                raise NotFoundError(f"{self._api_resource.kind} {namespace}/{name} not found")
            return unstructured.deep_copy(stored)

    def list(
        self,
        namespace: str = "",
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            self._record("list", namespace, "")
            result = []
            for (ns, _), obj in sorted(self._objects.items()):
                if namespace and ns != namespace:
                    continue
                if label_selector:
                    labels = unstructured.get_labels(obj)
                    if any(labels.get(k) != v for k, v in label_selector.items()):
                        continue
                result.append(unstructured.deep_copy(obj))
            return result

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = self._identity(obj)
        with self._lock:
            self._record("create", namespace, name)
            if (namespace, name) in self._objects:
                raise AlreadyExistsError(
                    f"{self._api_resource.kind} {namespace}/{name} already exists",
                    reason="AlreadyExists",
                )
            stored = unstructured.deep_copy(obj)
            meta = stored.setdefault("metadata", {})
            meta["uid"] = str(uuid.uuid4())
            meta["generation"] = 1
            meta["creationTimestamp"] = datetime.now(tz=UTC).isoformat()
            meta.pop("deletionTimestamp", None)
            self._store(stored, WatchEventType.ADDED)
            return unstructured.deep_copy(stored)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = self._identity(obj)
        with self._lock:
            self._record("update", namespace, name)
            current = self._check_writable(obj, namespace, name)
            stored = unstructured.deep_copy(obj)
            meta = stored.setdefault("metadata", {})
            old_meta = current["metadata"]
            meta["uid"] = old_meta["uid"]
            meta["creationTimestamp"] = old_meta["creationTimestamp"]
            if "deletionTimestamp" in old_meta:
                meta["deletionTimestamp"] = old_meta["deletionTimestamp"]
            if "status" in current:
                stored["status"] = current["status"]
            else:
                stored.pop("status", None)
            if stored.get("spec") != current.get("spec"):
                meta["generation"] = old_meta.get("generation", 1) + 1
            else:
                meta["generation"] = old_meta.get("generation", 1)

            if unstructured.is_deleting(stored) and not unstructured.get_finalizers(stored):
                del self._objects[(namespace, name)]
                self._notify(WatchEventType.DELETED, stored)
                return unstructured.deep_copy(stored)
            self._store(stored, WatchEventType.MODIFIED)
            return unstructured.deep_copy(stored)

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = self._identity(obj)
        with self._lock:
            self._record("update_status", namespace, name)
            current = self._check_writable(obj, namespace, name)
            stored = unstructured.deep_copy(current)
            if "status" in obj:
                stored["status"] = unstructured.deep_copy(obj["status"])
            else:
                stored.pop("status", None)
            self._store(stored, WatchEventType.MODIFIED)
            return unstructured.deep_copy(stored)

    def delete(self, namespace: str, name: str) -> None:
        with self._lock:
            self._record("delete", namespace, name)
            current = self._objects.get((namespace, name))
            if current is None:
                raise NotFoundError(f"{self._api_resource.kind} {namespace}/{name} not found")
            if unstructured.get_finalizers(current):
                if not unstructured.is_deleting(current):
                    stored = unstructured.deep_copy(current)
                    stored["metadata"]["deletionTimestamp"] = datetime.now(tz=UTC).isoformat()
                    self._store(stored, WatchEventType.MODIFIED)
                return
            del self._objects[(namespace, name)]
            self._notify(WatchEventType.DELETED, current)

    def watch(
        self,
        namespace: str,
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        events: queue.Queue[WatchEvent] = queue.Queue()
        with self._lock:
            self._watchers.append(events)
        return self._stream(events, namespace, stop_event)

    # --- Private ---

    def _stream(
        self,
        events: queue.Queue[WatchEvent],
        namespace: str,
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        try:
            while not stop_event.is_set():
                try:
                    event = events.get(timeout=0.05)
                except queue.Empty:
                    continue
                if namespace and unstructured.get_namespace(event.object) != namespace:
                    continue
                yield event
        finally:
            with self._lock:
                if events in self._watchers:
                    self._watchers.remove(events)

    def _identity(self, obj: dict[str, Any]) -> tuple[str, str]:
        namespace = unstructured.get_namespace(obj)
        name = unstructured.get_name(obj)
        if not name:
            raise ApiError("object has no metadata.name", status=422, reason="Invalid")
        return namespace, name

    def _record(self, verb: str, namespace: str, name: str) -> None:
        """Record an action and raise any injected failure.  Caller holds the lock."""
        self.actions.append((verb, namespace, name))
        pending = self._failures.get(verb)
        if pending:
            raise pending.pop(0)

    def _check_writable(
        self, obj: dict[str, Any], namespace: str, name: str
    ) -> dict[str, Any]:
        current = self._objects.get((namespace, name))
        if current is None:
            raise NotFoundError(f"{self._api_resource.kind} {namespace}/{name} not found")
        expected = unstructured.get_resource_version(obj)
        if expected and expected != unstructured.get_resource_version(current):
            raise ConflictError(
                f"{self._api_resource.kind} {namespace}/{name} has been modified",
                reason="Conflict",
            )
        return current

    def _store(self, obj: dict[str, Any], event_type: WatchEventType) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self._objects[self._identity(obj)] = obj
        self._notify(event_type, obj)

    def _notify(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        for watcher in self._watchers:
            watcher.put(WatchEvent(type=event_type, object=unstructured.deep_copy(obj)))


class InMemoryCluster:
    """A set of in-memory clients sharing one resource version sequence.

    Callable as a :data:`~kubefed.client.resource.ClientFactory`.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._versions = itertools.count(1)
        self._lock = threading.Lock()
        self._clients: dict[tuple[str, str], InMemoryResourceClient] = {}

    def __call__(self, api_resource: APIResource) -> InMemoryResourceClient:
        return self.client(api_resource)

    def client(self, api_resource: APIResource) -> InMemoryResourceClient:
        key = (api_resource.group, api_resource.kind)
        with self._lock:
            if key not in self._clients:
                self._clients[key] = InMemoryResourceClient(api_resource, self._versions)
            return self._clients[key]

    def writes(self) -> list[tuple[str, str, str, str]]:
        """Write actions across every kind, as (kind, verb, namespace, name)."""
        with self._lock:
            clients = list(self._clients.values())
        return [
            (c.api_resource.kind, *action) for c in clients for action in c.writes()
        ]

    def clear_actions(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
        for c in clients:
            c.clear_actions()
