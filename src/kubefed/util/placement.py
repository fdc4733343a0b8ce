"""Placement resolution for federated objects.

``spec.placement.clusterNames`` takes precedence over
``spec.placement.clusterSelector``.  When neither is present the object is
placed nowhere.  An empty selector (``{}``) selects every cluster.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from kubefed.util import unstructured


class PlacementError(Exception):
    """Raised when a placement cannot be resolved (e.g. a malformed selector)."""


def get_cluster_names(fed_object: dict[str, Any]) -> list[str] | None:
    """Return ``spec.placement.clusterNames``, or None when the field is absent."""
    names = unstructured.get_nested(fed_object, "spec", "placement", "clusterNames")
    if names is None:
        return None
    if not isinstance(names, list):
        raise PlacementError("spec.placement.clusterNames must be a list")
    return [str(n) for n in names]


def set_cluster_names(fed_object: dict[str, Any], names: Iterable[str]) -> None:
    """Set an explicit cluster list; the selector is dropped since names win."""
    unstructured.set_nested(fed_object, sorted(set(names)), "spec", "placement", "clusterNames")
    unstructured.remove_nested(fed_object, "spec", "placement", "clusterSelector")


def get_cluster_selector(fed_object: dict[str, Any]) -> dict[str, Any] | None:
    selector = unstructured.get_nested(fed_object, "spec", "placement", "clusterSelector")
    if selector is None:
        return None
    if not isinstance(selector, dict):
        raise PlacementError("spec.placement.clusterSelector must be a mapping")
    return selector


def selector_matches(selector: dict[str, Any], labels: dict[str, str]) -> bool:
    """Evaluate a Kubernetes label selector against *labels*."""
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False

    for expr in selector.get("matchExpressions") or []:
        key = expr.get("key")
        operator = expr.get("operator")
        values = expr.get("values") or []
        if not key:
            raise PlacementError("selector expression is missing a key")
        if operator == "In":
            if labels.get(key) not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif operator == "DoesNotExist":
            if key in labels:
                return False
        else:
            raise PlacementError(f"unsupported selector operator {operator!r}")
    return True


def compute_placement(
    fed_object: dict[str, Any],
    cluster_labels: dict[str, dict[str, str]],
) -> set[str]:
    """Resolve the placement of *fed_object* against the known clusters.

    *cluster_labels* maps every known cluster name to its labels.  Names
    that do not correspond to a known cluster are dropped.
    """
    names = get_cluster_names(fed_object)
    if names is not None:
        return {n for n in names if n in cluster_labels}

    selector = get_cluster_selector(fed_object)
    if selector is None:
        return set()
    return {
        name for name, labels in cluster_labels.items() if selector_matches(selector, labels)
    }


def compute_namespaced_placement(
    fed_object: dict[str, Any],
    fed_namespace: dict[str, Any] | None,
    cluster_labels: dict[str, dict[str, str]],
    limited_scope: bool,
) -> set[str]:
    """Placement of a namespaced object, constrained by its namespace's placement.

    With a federated namespace present the result is the intersection of
    both placements.  Without one, a controller limited to a single
    namespace uses the object's own placement, while a cluster-scoped
    controller places nothing (the containing namespace is not federated).
    """
    placement = compute_placement(fed_object, cluster_labels)
    if fed_namespace is None:
        if limited_scope:
            return placement
        return set()
    return placement & compute_placement(fed_namespace, cluster_labels)
