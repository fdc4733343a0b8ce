"""Scheduler plugin: applies schedule results to objects of one federated type.

A plugin renders a :class:`ScheduleResult` onto a federated object:

- ``spec.placement.clusterNames`` becomes the set of placed clusters
- for each scheduled path, placed clusters get an override carrying their
  share, unscheduled clusters lose that override, and every other override
  is left untouched

The object is written only when the placement or the scheduled override
values differ from what is already there.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from kubefed.client.errors import ApiError, NotFoundError
from kubefed.client.resource import ResourceClient, WatchEventType
from kubefed.models import ClusterOverride, FederatedTypeConfig, QualifiedName, ReconciliationStatus
from kubefed.scheduling.planner import ScheduleResult
from kubefed.util import overrides as overrides_util
from kubefed.util import placement as placement_util
from kubefed.util import unstructured
from kubefed.util.informer import Informer
from kubefed.util.overrides import OverrideError, OverridesMap
from kubefed.util.retry import retry_on_conflict

logger = logging.getLogger(__name__)


def placement_update_needed(names: Iterable[str] | None, new_names: Iterable[str]) -> bool:
    """True unless both collections name exactly the same clusters."""
    return sorted(set(names or [])) != sorted(set(new_names))


def override_update_needed(
    overrides_map: OverridesMap,
    scheduled: dict[str, dict[str, int]],
) -> bool:
    """True unless every scheduled value is already present as an override.

    Overrides for scheduled paths on clusters that are not scheduled also
    require an update, since they must be removed.
    """
    paths = {p for values in scheduled.values() for p in values}
    matched = 0
    for cluster, overrides in overrides_map.items():
        expected = scheduled.get(cluster)
        for o in overrides:
            if expected is None:
                if o.path in paths:
                    return True
                continue
            if o.path not in expected:
                continue
            if o.value != expected[o.path]:
                return True
            matched += 1
    return matched != sum(len(values) for values in scheduled.values())


def update_overrides_map(
    overrides_map: OverridesMap,
    scheduled: dict[str, dict[str, int]],
    paths: Iterable[str],
) -> OverridesMap:
    """Return *overrides_map* with the scheduled *paths* replaced by *scheduled*."""
    scheduled_paths = set(paths)
    result: OverridesMap = {}

    for cluster, overrides in overrides_map.items():
        if cluster in scheduled:
            result[cluster] = list(overrides)
            continue
        kept = [o for o in overrides if o.path not in scheduled_paths]
        if kept:
            result[cluster] = kept

    for cluster, values in scheduled.items():
        overrides = result.setdefault(cluster, [])
        for path, value in sorted(values.items()):
            for i, o in enumerate(overrides):
                if o.path == path:
                    overrides[i] = ClusterOverride(path=path, value=value)
                    break
            else:
                overrides.append(ClusterOverride(path=path, value=value))
    return result


class Plugin:
    """Writes schedule results onto the federated objects of one type."""

    def __init__(
        self,
        type_config: FederatedTypeConfig,
        fed_client: ResourceClient,
        paths: Iterable[str],
        enqueue: Callable[[QualifiedName], None],
        namespace: str = "",
    ) -> None:
        self._type_config = type_config
        self._client = fed_client
        self._paths = tuple(paths)
        self._enqueue = enqueue
        self._lock = threading.Lock()
        self._stopped = False
        self._informer = Informer(
            fed_client,
            self._on_event,
            namespace=namespace,
            name=f"plugin-{type_config.name}",
        )

    @property
    def type_config(self) -> FederatedTypeConfig:
        return self._type_config

    def run(self, stop_event: threading.Event) -> None:
        self._informer.run(stop_event)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the plugin; waits for an in-flight reconcile to finish."""
        with self._lock:
            self._stopped = True
        self._informer.stop(timeout)

    def _on_event(self, event_type: WatchEventType, obj: dict[str, Any]) -> None:
        # Preferences share the name of the object they schedule.
        self._enqueue(QualifiedName.from_object(obj))

    def reconcile(self, name: QualifiedName, result: ScheduleResult) -> ReconciliationStatus:
        with self._lock:
            if self._stopped:
                return ReconciliationStatus.ALL_OK
            try:
                retry_on_conflict(lambda: self._apply(name, result))
            except NotFoundError:
                logger.debug("No %s %s to schedule yet", self._type_config.name, name)
            except OverrideError as exc:
                logger.error("Cannot schedule %s %s: %s", self._type_config.name, name, exc)
                return ReconciliationStatus.NEEDS_RECHECK
            except ApiError:
                logger.exception("Failed to update %s %s", self._type_config.name, name)
                return ReconciliationStatus.ERROR
            return ReconciliationStatus.ALL_OK

    def _apply(self, name: QualifiedName, result: ScheduleResult) -> None:
        obj = self._client.get(name.namespace, name.name)
        placement = result.placement()
        scheduled = result.scheduled()
        overrides_map = overrides_util.get_overrides(obj)

        current_names = placement_util.get_cluster_names(obj)
        if not placement_update_needed(current_names, placement) and not override_update_needed(
            overrides_map, scheduled
        ):
            return

        updated = unstructured.deep_copy(obj)
        placement_util.set_cluster_names(updated, placement)
        overrides_util.set_overrides(
            updated, update_overrides_map(overrides_map, scheduled, self._paths)
        )
        self._client.update(updated)
        logger.info(
            "Scheduled %s %s to %s", self._type_config.name, name, ", ".join(placement) or "no clusters"
        )
