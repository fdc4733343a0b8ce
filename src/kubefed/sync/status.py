"""Propagation status written to a federated object's status subresource.

Shape::

    status:
      observedGeneration: 3
      clusters:
        - name: cluster-a
        - name: cluster-b
          status: UpdateFailed
      conditions:
        - type: Propagation
          status: "False"
          reason: CheckClusters
          lastUpdateTime: ...
          lastTransitionTime: ...
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

PROPAGATION_CONDITION = "Propagation"


class PropagationStatus(enum.StrEnum):
    """Per-cluster outcome.  The empty value means propagation succeeded."""

    OK = ""
    CLUSTER_NOT_READY = "ClusterNotReady"
    WAITING_FOR_REMOVAL = "WaitingForRemoval"
    RETRIEVAL_FAILED = "RetrievalFailed"
    COMPUTE_RESOURCE_FAILED = "ComputeResourceFailed"
    APPLY_OVERRIDES_FAILED = "ApplyOverridesFailed"
    CREATION_FAILED = "CreationFailed"
    UPDATE_FAILED = "UpdateFailed"
    DELETION_FAILED = "DeletionFailed"
    CREATION_TIMED_OUT = "CreationTimedOut"
    UPDATE_TIMED_OUT = "UpdateTimedOut"
    DELETION_TIMED_OUT = "DeletionTimedOut"


class AggregateReason(enum.StrEnum):
    """Reason recorded on the Propagation condition."""

    OK = ""
    CLUSTER_RETRIEVAL_FAILED = "ClusterRetrievalFailed"
    COMPUTE_PLACEMENT_FAILED = "ComputePlacementFailed"
    CHECK_CLUSTERS = "CheckClusters"
    NAMESPACE_NOT_FEDERATED = "NamespaceNotFederated"


def aggregate_reason(status_map: dict[str, PropagationStatus]) -> AggregateReason:
    if any(s != PropagationStatus.OK for s in status_map.values()):
        return AggregateReason.CHECK_CLUSTERS
    return AggregateReason.OK


def build_status(
    fed_object: dict[str, Any],
    status_map: dict[str, PropagationStatus],
    reason: AggregateReason,
    _now: datetime | None = None,
) -> dict[str, Any] | None:
    """Return the new status for *fed_object*, or None when nothing changed.

    Timestamps alone never count as a change.
    """
    now = (_now or datetime.now(tz=UTC)).isoformat()
    previous = fed_object.get("status") or {}

    clusters = []
    for name in sorted(status_map):
        entry: dict[str, Any] = {"name": name}
        if status_map[name] != PropagationStatus.OK:
            entry["status"] = str(status_map[name])
        clusters.append(entry)

    condition_status = "True" if reason == AggregateReason.OK else "False"
    old_condition = next(
        (
            c
            for c in previous.get("conditions") or []
            if c.get("type") == PROPAGATION_CONDITION
        ),
        None,
    )
    condition: dict[str, Any] = {
        "type": PROPAGATION_CONDITION,
        "status": condition_status,
        "lastUpdateTime": now,
        "lastTransitionTime": now,
    }
    if reason != AggregateReason.OK:
        condition["reason"] = str(reason)

    generation = (fed_object.get("metadata") or {}).get("generation")

    unchanged = (
        old_condition is not None
        and old_condition.get("status") == condition_status
        and old_condition.get("reason", "") == str(reason)
        and (previous.get("clusters") or []) == clusters
        and previous.get("observedGeneration") == generation
    )
    if unchanged:
        return None

    if old_condition is not None and old_condition.get("status") == condition_status:
        condition["lastTransitionTime"] = old_condition.get("lastTransitionTime", now)

    status = dict(previous)
    status["clusters"] = clusters
    status["conditions"] = [
        c for c in previous.get("conditions") or [] if c.get("type") != PROPAGATION_CONDITION
    ] + [condition]
    if generation is not None:
        status["observedGeneration"] = generation
    return status
