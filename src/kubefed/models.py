"""Core data models for kubefed-core.

Defines the schemas for:
- Object identities (qualified namespace/name pairs)
- API resource descriptions and federated type configurations
- Per-cluster overrides
- Scheduling preferences (replica and job flavours)
- PropagatedVersion records (per-cluster versions last pushed)
- Reconciliation outcomes reported by controller workers
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Enums ---


class ReconciliationStatus(enum.StrEnum):
    """Outcome of one reconcile pass, used to decide how a key is requeued."""

    ALL_OK = "all_ok"
    ERROR = "error"
    NEEDS_RECHECK = "needs_recheck"
    NOT_SYNCED = "not_synced"


class OverrideOperation(enum.StrEnum):
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


# --- Identity ---


@dataclass(frozen=True, order=True)
class QualifiedName:
    """Namespace/name identity of an object; namespace is empty when cluster-scoped."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def parse(cls, key: str) -> QualifiedName:
        namespace, sep, name = key.partition("/")
        if not sep:
            return cls(namespace="", name=key)
        return cls(namespace=namespace, name=name)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> QualifiedName:
        meta = obj.get("metadata") or {}
        return cls(namespace=meta.get("namespace", "") or "", name=meta.get("name", ""))


# --- Type configuration ---


class APIResource(BaseModel):
    """Group/version/kind description of a resource the controllers act on."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    group: str = ""
    version: str = "v1"
    kind: str
    plural_name: str = Field("", alias="pluralName")
    namespaced: bool = True

    @model_validator(mode="before")
    @classmethod
    def _default_plural(cls, data: Any) -> Any:
        if isinstance(data, dict) and not (data.get("pluralName") or data.get("plural_name")):
            data = {**data, "pluralName": str(data.get("kind", "")).lower() + "s"}
        return data

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version


class KindReference(BaseModel):
    kind: str


class FederatedTypeConfig(BaseModel):
    """Describes one federated type: its target, template and scheduling kinds.

    Placement and overrides are carried inline on the federated object
    (``spec.placement`` / ``spec.overrides``); the optional ``placement``
    and ``override`` references only name the kinds for display.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    target: APIResource
    federated_type: APIResource = Field(alias="federatedType")
    placement: KindReference | None = None
    override: KindReference | None = None
    scheduling_preference_kind: str | None = Field(None, alias="schedulingPreferenceKind")
    status_enabled: bool = Field(False, alias="statusEnabled")
    status_type: APIResource | None = Field(None, alias="statusType")
    """Where member cluster status is collected; derived from the federated type if unset."""
    propagation_enabled: bool = Field(True, alias="propagationEnabled")

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("type config name must not be empty")
        return value

    @property
    def namespaced(self) -> bool:
        return self.target.namespaced

    @property
    def target_is_namespace(self) -> bool:
        return self.target.kind == "Namespace" and not self.target.group

    @property
    def status_resource(self) -> APIResource:
        if self.status_type is not None:
            return self.status_type
        kind = f"{self.federated_type.kind}Status"
        return APIResource(
            group=self.federated_type.group,
            version=self.federated_type.version,
            kind=kind,
            pluralName=kind.lower() + "es",
            namespaced=self.federated_type.namespaced,
        )


# --- Overrides ---


class ClusterOverride(BaseModel):
    """A single JSON-pointer patch applied to one cluster's copy of an object."""

    path: str
    value: Any = None
    op: OverrideOperation = OverrideOperation.REPLACE

    @field_validator("path", mode="before")
    @classmethod
    def _join_path(cls, value: Any) -> Any:
        # Paths may be given as a list of segments.
        if isinstance(value, list | tuple):
            escaped = [str(p).replace("~", "~0").replace("/", "~1") for p in value]
            return "/" + "/".join(escaped)
        return value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path}
        if self.op != OverrideOperation.REPLACE:
            data["op"] = self.op.value
        if self.op != OverrideOperation.REMOVE:
            data["value"] = self.value
        return data


# --- Scheduling ---


class ClusterPreferences(BaseModel):
    """Per-cluster scheduling preference."""

    model_config = ConfigDict(populate_by_name=True)

    weight: int = Field(0, ge=0)
    """Relative share of the remaining capacity after minimums."""

    min_replicas: int = Field(0, ge=0, alias="minReplicas")
    """Allocated before any weighted distribution."""

    max_replicas: int | None = Field(None, ge=0, alias="maxReplicas")
    """Upper bound for this cluster; None means unbounded."""


# --- PropagatedVersion ---


class ClusterObjectVersion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cluster_name: str = Field(alias="clusterName")
    version: str


class PropagatedVersionStatus(BaseModel):
    """Template/override versions plus the per-cluster versions last observed."""

    model_config = ConfigDict(populate_by_name=True)

    template_version: str = Field("", alias="templateVersion")
    override_version: str = Field("", alias="overrideVersion")
    cluster_versions: list[ClusterObjectVersion] = Field(
        default_factory=list, alias="clusterVersions"
    )

    def version_map(self) -> dict[str, str]:
        return {cv.cluster_name: cv.version for cv in self.cluster_versions}

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class PropagatedVersion(BaseModel):
    """Persisted record of the versions propagated for one federated object."""

    model_config = ConfigDict(populate_by_name=True)

    namespace: str = ""
    name: str
    resource_version: str = ""
    owner_references: list[dict[str, Any]] = Field(default_factory=list)
    status: PropagatedVersionStatus = Field(default_factory=PropagatedVersionStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> PropagatedVersion:
        meta = obj.get("metadata") or {}
        return cls(
            namespace=meta.get("namespace", "") or "",
            name=meta.get("name", ""),
            resource_version=meta.get("resourceVersion", "") or "",
            owner_references=list(meta.get("ownerReferences") or []),
            status=PropagatedVersionStatus.model_validate(obj.get("status") or {}),
        )

    def to_object(self, api_resource: APIResource) -> dict[str, Any]:
        meta: dict[str, Any] = {"name": self.name}
        if self.namespace:
            meta["namespace"] = self.namespace
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        if self.owner_references:
            meta["ownerReferences"] = [dict(ref) for ref in self.owner_references]
        return {
            "apiVersion": api_resource.api_version,
            "kind": api_resource.kind,
            "metadata": meta,
            "status": self.status.to_dict(),
        }
