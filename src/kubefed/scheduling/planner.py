"""Replica planner: distributes a total across clusters by preference.

The planner is pure: the same preference and cluster list always produce
the same result, and nothing is read from or written to the API.

Distribution rules:

1. No per-cluster preferences: ``total // n`` to every ready cluster, and
   the first ``total % n`` clusters in name order get one more.
2. With preferences: every eligible cluster first receives its
   ``minReplicas`` (in descending weight order, ties by name, until the
   total runs out).  What remains is split in proportion to weight using
   floor division; the rounding remainder goes one unit at a time to the
   heaviest clusters first, ties by name.  ``maxReplicas`` caps a cluster
   and the capacity it cannot take is split among the others.
3. Only ready clusters are eligible.  A cluster without its own entry uses
   the ``"*"`` entry when there is one, and receives nothing otherwise.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from kubefed.models import ClusterPreferences
from kubefed.scheduling.types import DEFAULT_PREFERENCE_KEY, SchedulingPreference


@dataclass(frozen=True)
class ScheduleResult:
    """Per-cluster allocation of every scheduled quantity.

    ``allocations`` maps cluster -> override path -> value and covers every
    ready cluster, including those allocated zero.
    """

    allocations: dict[str, dict[str, int]] = field(default_factory=dict)

    def placement(self) -> list[str]:
        """Clusters with a positive allocation of every quantity, sorted."""
        return sorted(
            cluster
            for cluster, values in self.allocations.items()
            if values and all(v > 0 for v in values.values())
        )

    def scheduled(self) -> dict[str, dict[str, int]]:
        """Allocations restricted to the placed clusters."""
        placed = set(self.placement())
        return {c: dict(v) for c, v in self.allocations.items() if c in placed}


def plan(
    total: int,
    preferences: dict[str, ClusterPreferences],
    clusters: Iterable[str],
) -> dict[str, int]:
    """Distribute *total* across *clusters* according to *preferences*."""
    ready = sorted(set(clusters))
    if not ready:
        return {}
    if not preferences:
        return _even(total, ready)

    default = preferences.get(DEFAULT_PREFERENCE_KEY)
    prefs: dict[str, ClusterPreferences] = {}
    for cluster in ready:
        pref = preferences.get(cluster, default)
        if pref is not None:
            prefs[cluster] = pref

    allocation = {cluster: 0 for cluster in ready}
    order = sorted(prefs, key=lambda c: (-prefs[c].weight, c))

    def room(cluster: str) -> int:
        cap = prefs[cluster].max_replicas
        if cap is None:
            return total
        return max(cap - allocation[cluster], 0)

    remaining = total
    for cluster in order:
        if remaining == 0:
            break
        grant = min(prefs[cluster].min_replicas, room(cluster), remaining)
        allocation[cluster] += grant
        remaining -= grant

    while remaining > 0:
        active = [c for c in order if prefs[c].weight > 0 and room(c) > 0]
        if not active:
            break
        total_weight = sum(prefs[c].weight for c in active)
        shares = {c: remaining * prefs[c].weight // total_weight for c in active}

        capped = [
            c for c in active if prefs[c].max_replicas is not None and shares[c] >= room(c)
        ]
        if capped:
            # Fill capped clusters and split the rest among the others.
            for c in capped:
                grant = room(c)
                allocation[c] += grant
                remaining -= grant
            continue

        for c in active:
            allocation[c] += shares[c]
            remaining -= shares[c]
        for c in active:
            if remaining == 0:
                break
            if room(c) > 0:
                allocation[c] += 1
                remaining -= 1

    return allocation


def _even(total: int, clusters: list[str]) -> dict[str, int]:
    base, extra = divmod(total, len(clusters))
    return {c: base + (1 if i < extra else 0) for i, c in enumerate(clusters)}


def schedule(preference: SchedulingPreference, ready_clusters: Iterable[str]) -> ScheduleResult:
    """Compute the allocation of every quantity of *preference*.

    Each quantity (e.g. parallelism and completions) is planned
    independently from the same cluster preferences.
    """
    ready = sorted(set(ready_clusters))
    allocations: dict[str, dict[str, int]] = {c: {} for c in ready}
    for path, total in sorted(preference.totals.items()):
        for cluster, value in plan(total, preference.clusters, ready).items():
            allocations[cluster][path] = value
    return ScheduleResult(allocations=allocations)
