"""Scheduling kinds and preference objects.

A :class:`SchedulingKind` describes one flavour of scheduling preference:
the resource that holds the preferences and which totals it distributes
to which override paths.  Two kinds ship by default:

- ``ReplicaSchedulingPreference``: ``totalReplicas`` -> ``/spec/replicas``
- ``JobSchedulingPreference``: ``totalParallelism`` -> ``/spec/parallelism``
  and ``totalCompletions`` -> ``/spec/completions``

Kinds are looked up through an explicit :class:`SchedulingTypes` registry
passed to the SchedulingManager.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from kubefed.models import APIResource, ClusterPreferences

SCHEDULING_GROUP = "scheduling.kubefed.io"
SCHEDULING_VERSION = "v1alpha1"
DEFAULT_PREFERENCE_KEY = "*"


class PlanError(Exception):
    """Raised when a scheduling preference is malformed."""


@dataclass(frozen=True)
class SchedulingKind:
    """One scheduling preference kind and the quantities it distributes."""

    kind: str
    preference_resource: APIResource
    quantities: tuple[tuple[str, str], ...]
    """(spec field holding the total, override path receiving the share) pairs."""

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(path for _, path in self.quantities)


REPLICA_SCHEDULING = SchedulingKind(
    kind="ReplicaSchedulingPreference",
    preference_resource=APIResource(
        group=SCHEDULING_GROUP,
        version=SCHEDULING_VERSION,
        kind="ReplicaSchedulingPreference",
        pluralName="replicaschedulingpreferences",
    ),
    quantities=(("totalReplicas", "/spec/replicas"),),
)

JOB_SCHEDULING = SchedulingKind(
    kind="JobSchedulingPreference",
    preference_resource=APIResource(
        group=SCHEDULING_GROUP,
        version=SCHEDULING_VERSION,
        kind="JobSchedulingPreference",
        pluralName="jobschedulingpreferences",
    ),
    quantities=(
        ("totalParallelism", "/spec/parallelism"),
        ("totalCompletions", "/spec/completions"),
    ),
)


class SchedulingTypes:
    """Registry of the scheduling kinds a manager can start schedulers for."""

    def __init__(self, kinds: list[SchedulingKind] | None = None) -> None:
        self._kinds: dict[str, SchedulingKind] = {}
        for k in kinds or []:
            self.register(k)

    def register(self, kind: SchedulingKind) -> None:
        self._kinds[kind.kind] = kind

    def get(self, kind: str) -> SchedulingKind | None:
        return self._kinds.get(kind)

    def kinds(self) -> list[str]:
        return sorted(self._kinds)


def default_scheduling_types() -> SchedulingTypes:
    return SchedulingTypes([REPLICA_SCHEDULING, JOB_SCHEDULING])


class SchedulingPreference(BaseModel):
    """A parsed preference object, independent of its kind."""

    namespace: str = ""
    name: str
    target_kind: str
    totals: dict[str, int]
    """Override path -> total quantity to distribute."""

    clusters: dict[str, ClusterPreferences] = Field(default_factory=dict)
    """Per-cluster preferences; ``"*"`` supplies defaults for unlisted clusters."""

    @classmethod
    def from_object(cls, obj: dict[str, Any], kind: SchedulingKind) -> SchedulingPreference:
        meta = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        target_kind = spec.get("targetKind")
        if not target_kind:
            raise PlanError(f"{kind.kind} {meta.get('name', '')!r} has no spec.targetKind")

        totals: dict[str, int] = {}
        for field_name, path in kind.quantities:
            value = spec.get(field_name, 0)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise PlanError(
                    f"{kind.kind} {meta.get('name', '')!r}: spec.{field_name} "
                    f"must be a non-negative integer"
                )
            totals[path] = value

        try:
            return cls(
                namespace=meta.get("namespace", "") or "",
                name=meta.get("name", ""),
                target_kind=target_kind,
                totals=totals,
                clusters={
                    name: ClusterPreferences.model_validate(prefs or {})
                    for name, prefs in (spec.get("clusters") or {}).items()
                },
            )
        except ValidationError as exc:
            raise PlanError(f"{kind.kind} {meta.get('name', '')!r}: {exc}") from exc
