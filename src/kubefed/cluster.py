"""Member cluster registry.

Cluster membership and health are owned elsewhere (join/unjoin tooling and
a health checker); this registry only holds the current view and tells
listeners when it changes.  Listeners are expected to do nothing heavier
than enqueue keys.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from kubefed.client.resource import ClientFactory, ResourceClient
from kubefed.config import ConfigError
from kubefed.models import APIResource

logger = logging.getLogger(__name__)


class ClusterEvent(enum.StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    BECAME_READY = "became_ready"
    BECAME_UNREADY = "became_unready"
    LABELS_CHANGED = "labels_changed"


ClusterListener = Callable[[str, ClusterEvent], None]


@dataclass
class ClusterSnapshot:
    """A member cluster as seen by the controllers."""

    name: str
    client_factory: ClientFactory
    ready: bool = True
    labels: dict[str, str] = field(default_factory=dict)

    def client(self, api_resource: APIResource) -> ResourceClient:
        return self.client_factory(api_resource)


class ClusterRegistry:
    """Thread-safe set of member clusters with change notification."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clusters: dict[str, ClusterSnapshot] = {}
        self._listeners: list[ClusterListener] = []

    def add_listener(self, listener: ClusterListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ClusterListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_cluster(self, snapshot: ClusterSnapshot) -> None:
        with self._lock:
            previous = self._clusters.get(snapshot.name)
            self._clusters[snapshot.name] = snapshot
        if previous is None:
            self._notify(snapshot.name, ClusterEvent.ADDED)
        elif previous.ready != snapshot.ready:
            self._notify(
                snapshot.name,
                ClusterEvent.BECAME_READY if snapshot.ready else ClusterEvent.BECAME_UNREADY,
            )
        elif previous.labels != snapshot.labels:
            self._notify(snapshot.name, ClusterEvent.LABELS_CHANGED)

    def remove_cluster(self, name: str) -> None:
        with self._lock:
            removed = self._clusters.pop(name, None)
        if removed is not None:
            self._notify(name, ClusterEvent.REMOVED)

    def set_ready(self, name: str, ready: bool) -> None:
        with self._lock:
            snapshot = self._clusters.get(name)
            if snapshot is None or snapshot.ready == ready:
                return
            snapshot.ready = ready
        logger.info("Cluster %s is now %s", name, "ready" if ready else "not ready")
        self._notify(name, ClusterEvent.BECAME_READY if ready else ClusterEvent.BECAME_UNREADY)

    def set_labels(self, name: str, labels: dict[str, str]) -> None:
        with self._lock:
            snapshot = self._clusters.get(name)
            if snapshot is None or snapshot.labels == labels:
                return
            snapshot.labels = dict(labels)
        self._notify(name, ClusterEvent.LABELS_CHANGED)

    def get(self, name: str) -> ClusterSnapshot | None:
        with self._lock:
            return self._clusters.get(name)

    def clusters(self) -> list[ClusterSnapshot]:
        with self._lock:
            return sorted(self._clusters.values(), key=lambda c: c.name)

    def ready_clusters(self) -> list[ClusterSnapshot]:
        return [c for c in self.clusters() if c.ready]

    def _notify(self, name: str, event: ClusterEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(name, event)
            except Exception:
                logger.exception("Cluster listener failed for %s (%s)", name, event)


# --- Loading from YAML ---


class ClusterEntry(BaseModel):
    """One member cluster as declared in a clusters file."""

    name: str
    kubeconfig: str | None = None
    context: str | None = None
    host: str | None = None
    token: str | None = None
    verify_ssl: bool = True
    labels: dict[str, str] = Field(default_factory=dict)
    ready: bool = True


def load_cluster_entries(path: str | Path) -> list[ClusterEntry]:
    """Load a clusters file (``clusters: [...]``), resolving kubeconfig paths."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Clusters file not found: {path}")
    data: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if isinstance(data, dict):
        data = data.get("clusters") or []
    if not isinstance(data, list):
        raise ConfigError(f"Expected a list of clusters in {path}")

    entries: list[ClusterEntry] = []
    seen: set[str] = set()
    for i, raw in enumerate(data):
        try:
            entry = ClusterEntry.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid cluster entry #{i} in {path}: {exc}") from exc
        if entry.name in seen:
            raise ConfigError(f"Duplicate cluster name {entry.name!r} in {path}")
        seen.add(entry.name)
        if entry.kubeconfig:
            entry.kubeconfig = str((path.parent / Path(entry.kubeconfig).expanduser()).resolve())
        entries.append(entry)
    return entries
