"""Per-cluster overrides: reading, writing and applying JSON-pointer patches.

A federated object carries its overrides as::

    spec:
      overrides:
        - clusterName: cluster-a
          clusterOverrides:
            - path: /spec/replicas
              value: 3
            - path: /metadata/labels/tier
              op: remove
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from kubefed.models import ClusterOverride, OverrideOperation
from kubefed.util import unstructured

OverridesMap = dict[str, list[ClusterOverride]]

INVALID_PATHS = frozenset({"/metadata/namespace", "/metadata/name", "/metadata/generateName"})


class OverrideError(Exception):
    """Raised when overrides are malformed or cannot be applied."""


def get_overrides(fed_object: dict[str, Any]) -> OverridesMap:
    """Read ``spec.overrides`` into a cluster -> overrides map."""
    raw = unstructured.get_nested(fed_object, "spec", "overrides", default=None) or []
    if not isinstance(raw, list):
        raise OverrideError("spec.overrides must be a list")

    result: OverridesMap = {}
    for entry in raw:
        cluster = (entry or {}).get("clusterName")
        if not cluster:
            raise OverrideError("override entry is missing clusterName")
        if cluster in result:
            raise OverrideError(f"cluster {cluster!r} appears more than once in overrides")
        try:
            overrides = [
                ClusterOverride.model_validate(o) for o in entry.get("clusterOverrides") or []
            ]
        except ValidationError as exc:
            raise OverrideError(f"invalid override for cluster {cluster!r}: {exc}") from exc

        seen: set[str] = set()
        for o in overrides:
            if o.path in INVALID_PATHS:
                raise OverrideError(f"override path {o.path!r} is not permitted")
            if o.path in seen:
                raise OverrideError(
                    f"path {o.path!r} appears more than once for cluster {cluster!r}"
                )
            seen.add(o.path)
        result[cluster] = overrides
    return result


def set_overrides(fed_object: dict[str, Any], overrides_map: OverridesMap) -> None:
    """Write *overrides_map* back to ``spec.overrides``, clusters in sorted order."""
    entries = [
        {
            "clusterName": cluster,
            "clusterOverrides": [o.to_dict() for o in overrides],
        }
        for cluster, overrides in sorted(overrides_map.items())
        if overrides
    ]
    if entries:
        unstructured.set_nested(fed_object, entries, "spec", "overrides")
    else:
        unstructured.remove_nested(fed_object, "spec", "overrides")


def parse_pointer(path: str) -> list[str]:
    if not path.startswith("/"):
        raise OverrideError(f"override path {path!r} must start with '/'")
    return [p.replace("~1", "/").replace("~0", "~") for p in path[1:].split("/")]


def apply_overrides(obj: dict[str, Any], overrides: list[ClusterOverride]) -> None:
    """Apply *overrides* to *obj* in place."""
    for o in overrides:
        _apply_one(obj, parse_pointer(o.path), o)


def _apply_one(obj: dict[str, Any], segments: list[str], override: ClusterOverride) -> None:
    parent: Any = obj
    for i, seg in enumerate(segments[:-1]):
        if isinstance(parent, list):
            parent = parent[_index(seg, parent, override.path)]
            continue
        if not isinstance(parent, dict):
            raise OverrideError(
                f"cannot apply override at {override.path!r}: {seg!r} is below a scalar"
            )
        if seg not in parent or parent[seg] is None:
            if override.op == OverrideOperation.REMOVE:
                return
            # Missing intermediate containers are created as needed.
            nxt = segments[i + 1]
            parent[seg] = [] if nxt.isdigit() or nxt == "-" else {}
        parent = parent[seg]

    last = segments[-1]
    if isinstance(parent, list):
        if override.op == OverrideOperation.REMOVE:
            idx = _index(last, parent, override.path)
            del parent[idx]
        elif last == "-":
            parent.append(override.value)
        elif override.op == OverrideOperation.ADD:
            parent.insert(_index(last, parent, override.path, allow_end=True), override.value)
        else:
            parent[_index(last, parent, override.path)] = override.value
        return

    if not isinstance(parent, dict):
        raise OverrideError(f"cannot apply override at {override.path!r}: parent is not an object")
    if override.op == OverrideOperation.REMOVE:
        parent.pop(last, None)
    else:
        parent[last] = override.value


def _index(seg: str, container: list[Any], path: str, allow_end: bool = False) -> int:
    if not seg.isdigit():
        raise OverrideError(f"invalid list index {seg!r} in override path {path!r}")
    idx = int(seg)
    limit = len(container) + (1 if allow_end else 0)
    if idx >= limit:
        raise OverrideError(f"list index {idx} out of range in override path {path!r}")
    return idx
