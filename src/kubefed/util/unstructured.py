"""Helpers for reading and writing generic (dict-shaped) Kubernetes objects."""

from __future__ import annotations

import copy
from typing import Any

MANAGED_LABEL = "kubefed.io/managed"
ORPHAN_ANNOTATION = "kubefed.io/orphan"


def get_nested(obj: dict[str, Any], *fields: str, default: Any = None) -> Any:
    current: Any = obj
    for f in fields:
        if not isinstance(current, dict) or f not in current:
            return default
        current = current[f]
    return current


def set_nested(obj: dict[str, Any], value: Any, *fields: str) -> None:
    current = obj
    for f in fields[:-1]:
        nxt = current.get(f)
        if not isinstance(nxt, dict):
            nxt = {}
            current[f] = nxt
        current = nxt
    current[fields[-1]] = value


def remove_nested(obj: dict[str, Any], *fields: str) -> None:
    parent = get_nested(obj, *fields[:-1]) if len(fields) > 1 else obj
    if isinstance(parent, dict):
        parent.pop(fields[-1], None)


def deep_copy(obj: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(obj)


def get_name(obj: dict[str, Any]) -> str:
    return get_nested(obj, "metadata", "name", default="") or ""


def get_namespace(obj: dict[str, Any]) -> str:
    return get_nested(obj, "metadata", "namespace", default="") or ""


def get_resource_version(obj: dict[str, Any]) -> str:
    return get_nested(obj, "metadata", "resourceVersion", default="") or ""


def get_labels(obj: dict[str, Any]) -> dict[str, str]:
    return dict(get_nested(obj, "metadata", "labels", default=None) or {})


def get_annotations(obj: dict[str, Any]) -> dict[str, str]:
    return dict(get_nested(obj, "metadata", "annotations", default=None) or {})


def get_finalizers(obj: dict[str, Any]) -> list[str]:
    return list(get_nested(obj, "metadata", "finalizers", default=None) or [])


def set_finalizers(obj: dict[str, Any], finalizers: list[str]) -> None:
    if finalizers:
        set_nested(obj, list(finalizers), "metadata", "finalizers")
    else:
        remove_nested(obj, "metadata", "finalizers")


def is_deleting(obj: dict[str, Any]) -> bool:
    return bool(get_nested(obj, "metadata", "deletionTimestamp"))


def add_managed_label(obj: dict[str, Any]) -> None:
    labels = get_labels(obj)
    labels[MANAGED_LABEL] = "true"
    set_nested(obj, labels, "metadata", "labels")


def has_managed_label(obj: dict[str, Any]) -> bool:
    return get_labels(obj).get(MANAGED_LABEL) == "true"


def is_orphaning_enabled(obj: dict[str, Any]) -> bool:
    return get_annotations(obj).get(ORPHAN_ANNOTATION) == "true"
