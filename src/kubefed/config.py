"""Config file loading and auto-discovery for kubefed-core.

Searches for ``kubefed.yaml`` in the current directory and parent
directories, parses it, and resolves all relative paths against the
config file's location.

Example::

    federation_namespace: kube-federation-system
    target_namespace: ""          # empty watches every namespace
    kubeconfig: ~/.kube/host.yaml
    type_configs: ./types.yaml
    clusters: ./clusters.yaml
    worker_count: 4
    timing:
      review_delay: 10
      operation_timeout: 30
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

CONFIG_FILENAME = "kubefed.yaml"
DEFAULT_FEDERATION_NAMESPACE = "kube-federation-system"


class ConfigError(Exception):
    """Raised when a config file is present but invalid."""


class WorkerTiming(BaseModel):
    """Delays and backoff used by every controller's work queue."""

    review_delay: float = Field(10.0, gt=0)
    """Requeue delay for keys that reported NEEDS_RECHECK."""

    cluster_sync_delay: float = Field(3.0, gt=0)
    """Requeue delay for keys that reported NOT_SYNCED (caches still loading)."""

    initial_backoff: float = Field(5.0, gt=0)
    """First retry delay for keys that reported ERROR."""

    max_backoff: float = Field(60.0, gt=0)
    """Cap on the exponential retry delay."""

    operation_timeout: float = Field(30.0, gt=0)
    """How long a reconcile pass waits for its per-cluster operations."""

    @classmethod
    def minimal_latency(cls) -> WorkerTiming:
        """Timings suitable for tests: everything happens almost immediately."""
        return cls(
            review_delay=0.05,
            cluster_sync_delay=0.02,
            initial_backoff=0.01,
            max_backoff=0.2,
            operation_timeout=5.0,
        )


class ClusterHealthConfig(BaseModel):
    """Delays applied when cluster readiness changes."""

    cluster_available_delay: float = Field(20.0, ge=0)
    """Wait before reconciling everything after a cluster becomes ready."""

    cluster_unavailable_delay: float = Field(60.0, ge=0)
    """Wait before reconciling everything after a cluster becomes unready."""

    @classmethod
    def minimal_latency(cls) -> ClusterHealthConfig:
        return cls(cluster_available_delay=0.0, cluster_unavailable_delay=0.0)


@dataclass(frozen=True)
class ControllerConfig:
    """Parsed kubefed-core configuration."""

    config_path: Path | None = None
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    federation_namespace: str = DEFAULT_FEDERATION_NAMESPACE
    target_namespace: str = ""
    type_configs: str | None = None
    clusters: str | None = None
    worker_count: int = 2
    timing: WorkerTiming = field(default_factory=WorkerTiming)
    cluster_health: ClusterHealthConfig = field(default_factory=ClusterHealthConfig)

    @property
    def limited_scope(self) -> bool:
        """True when controllers only watch ``target_namespace``."""
        return bool(self.target_namespace)

    @classmethod
    def for_testing(cls, **overrides: Any) -> ControllerConfig:
        values: dict[str, Any] = {
            "timing": WorkerTiming.minimal_latency(),
            "cluster_health": ClusterHealthConfig.minimal_latency(),
        }
        values.update(overrides)
        return cls(**values)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``kubefed.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> ControllerConfig:
    """Load a kubefed-core config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``ControllerConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return ControllerConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> ControllerConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    base = config_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if val is None:
            return None
        return str((base / Path(val).expanduser()).resolve())

    worker_count = data.get("worker_count", 2)
    if not isinstance(worker_count, int) or worker_count < 1:
        msg = f"worker_count must be a positive integer in {config_path}"
        raise ConfigError(msg)

    try:
        timing = WorkerTiming.model_validate(data.get("timing") or {})
        cluster_health = ClusterHealthConfig.model_validate(data.get("cluster_health") or {})
    except ValidationError as exc:
        msg = f"Invalid timing settings in {config_path}: {exc}"
        raise ConfigError(msg) from exc

    return ControllerConfig(
        config_path=config_path,
        kubeconfig=_resolve("kubeconfig"),
        context=data.get("context"),
        in_cluster=bool(data.get("in_cluster", False)),
        federation_namespace=data.get("federation_namespace", DEFAULT_FEDERATION_NAMESPACE),
        target_namespace=data.get("target_namespace", "") or "",
        type_configs=_resolve("type_configs"),
        clusters=_resolve("clusters"),
        worker_count=worker_count,
        timing=timing,
        cluster_health=cluster_health,
    )
