"""Federated type registry.

Holds the active :class:`FederatedTypeConfig` set and notifies subscribers
when a config is added, updated or removed.  It is an ordinary object that
callers construct and pass to the controllers that need it.

Type configs are usually loaded from YAML::

    types:
      - name: deployments.apps
        target: {group: apps, version: v1, kind: Deployment}
        federatedType: {group: types.kubefed.io, version: v1beta1, kind: FederatedDeployment}
        schedulingPreferenceKind: ReplicaSchedulingPreference
        statusEnabled: true
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kubefed.models import FederatedTypeConfig

logger = logging.getLogger(__name__)


class TypeRegistryError(Exception):
    """Raised when type configs cannot be loaded or are inconsistent."""


class TypeConfigEvent(enum.StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


TypeConfigListener = Callable[[TypeConfigEvent, FederatedTypeConfig], None]


class TypeRegistry:
    """Thread-safe registry of federated type configs."""

    def __init__(self, type_configs: list[FederatedTypeConfig] | None = None) -> None:
        self._lock = threading.Lock()
        self._configs: dict[str, FederatedTypeConfig] = {}
        self._listeners: list[TypeConfigListener] = []
        for tc in type_configs or []:
            self._configs[tc.name] = tc

    def add_listener(self, listener: TypeConfigListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TypeConfigListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def register(self, type_config: FederatedTypeConfig) -> None:
        """Add *type_config*, or replace the config with the same name."""
        with self._lock:
            previous = self._configs.get(type_config.name)
            if previous == type_config:
                return
            self._configs[type_config.name] = type_config
        event = TypeConfigEvent.ADDED if previous is None else TypeConfigEvent.UPDATED
        logger.info("Type config %s %s", type_config.name, event)
        self._notify(event, type_config)

    def unregister(self, name: str) -> None:
        with self._lock:
            removed = self._configs.pop(name, None)
        if removed is None:
            return
        logger.info("Type config %s deleted", name)
        self._notify(TypeConfigEvent.DELETED, removed)

    def get(self, name: str) -> FederatedTypeConfig | None:
        with self._lock:
            return self._configs.get(name)

    def list(self) -> list[FederatedTypeConfig]:
        with self._lock:
            return [self._configs[n] for n in sorted(self._configs)]

    def by_federated_kind(self, kind: str) -> FederatedTypeConfig | None:
        with self._lock:
            for tc in self._configs.values():
                if tc.federated_type.kind == kind:
                    return tc
        return None

    def _notify(self, event: TypeConfigEvent, type_config: FederatedTypeConfig) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, type_config)
            except Exception:
                logger.exception("Type config listener failed for %s", type_config.name)


def load_type_configs(path: str | Path) -> list[FederatedTypeConfig]:
    """Load type configs from a YAML file (a list, or a mapping with ``types``)."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Type config file not found: {path}")
    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    except yaml.YAMLError as exc:
        raise TypeRegistryError(f"Failed to parse {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("types") or []
    if not isinstance(data, list):
        raise TypeRegistryError(f"Expected a list of type configs in {path}")

    configs: list[FederatedTypeConfig] = []
    names: set[str] = set()
    for i, raw in enumerate(data):
        try:
            tc = FederatedTypeConfig.model_validate(raw)
        except ValidationError as exc:
            raise TypeRegistryError(f"Invalid type config #{i} in {path}: {exc}") from exc
        if tc.name in names:
            raise TypeRegistryError(f"Duplicate type config name {tc.name!r} in {path}")
        names.add(tc.name)
        configs.append(tc)
    return configs
