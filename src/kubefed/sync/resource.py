"""FederatedResource: one federated object plus the type config describing it.

Knows how to derive everything the sync controller needs from the raw
object: identities, template/override versions, placement and the
desired object for each member cluster.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from kubefed.models import FederatedTypeConfig, QualifiedName
from kubefed.util import overrides as overrides_util
from kubefed.util import placement as placement_util
from kubefed.util import unstructured


def _hash(value: Any) -> str:
    payload = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def target_name_for(type_config: FederatedTypeConfig, federated_name: QualifiedName) -> QualifiedName:
    """Name of the member-cluster object for *federated_name*."""
    if type_config.target_is_namespace or not type_config.namespaced:
        return QualifiedName("", federated_name.name)
    return federated_name


class FederatedResource:
    """Wraps a federated object for one reconcile pass."""

    def __init__(
        self,
        type_config: FederatedTypeConfig,
        fed_object: dict[str, Any],
        fed_namespace: dict[str, Any] | None = None,
        limited_scope: bool = False,
    ) -> None:
        self._type_config = type_config
        self._object = fed_object
        self._fed_namespace = fed_namespace
        self._limited_scope = limited_scope
        self._overrides: overrides_util.OverridesMap | None = None

    @property
    def type_config(self) -> FederatedTypeConfig:
        return self._type_config

    @property
    def object(self) -> dict[str, Any]:
        return self._object

    @property
    def fed_namespace(self) -> dict[str, Any] | None:
        """The federated namespace containing this object, if any."""
        return self._fed_namespace

    @property
    def federated_name(self) -> QualifiedName:
        return QualifiedName.from_object(self._object)

    @property
    def federated_kind(self) -> str:
        return self._type_config.federated_type.kind

    @property
    def target_name(self) -> QualifiedName:
        return target_name_for(self._type_config, self.federated_name)

    @property
    def target_kind(self) -> str:
        return self._type_config.target.kind

    def template_version(self) -> str:
        template = unstructured.get_nested(self._object, "spec", "template")
        if template is None:
            return ""
        return _hash(template)

    def override_version(self) -> str:
        return _hash({"overrides": unstructured.get_nested(self._object, "spec", "overrides")})

    def compute_placement(self, cluster_labels: dict[str, dict[str, str]]) -> set[str]:
        """Cluster names this object should exist in, out of *cluster_labels*."""
        if self._type_config.namespaced and not self._type_config.target_is_namespace:
            return placement_util.compute_namespaced_placement(
                self._object, self._fed_namespace, cluster_labels, self._limited_scope
            )
        return placement_util.compute_placement(self._object, cluster_labels)

    def overrides_for_cluster(self, cluster: str) -> list[Any]:
        if self._overrides is None:
            self._overrides = overrides_util.get_overrides(self._object)
        return self._overrides.get(cluster, [])

    def object_for_cluster(self, cluster: str) -> dict[str, Any]:
        """Desired object in *cluster*: template, identity, overrides, managed label."""
        template = unstructured.get_nested(self._object, "spec", "template", default=None)
        obj = unstructured.deep_copy(template) if isinstance(template, dict) else {}

        target = self.target_name
        meta = obj.setdefault("metadata", {})
        meta["name"] = target.name
        if target.namespace:
            meta["namespace"] = target.namespace
        else:
            meta.pop("namespace", None)
        api = self._type_config.target
        obj["apiVersion"] = api.api_version
        obj["kind"] = api.kind

        overrides_util.apply_overrides(obj, self.overrides_for_cluster(cluster))
        unstructured.add_managed_label(obj)
        return obj
