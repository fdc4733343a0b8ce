"""kubefed-core: propagation and scheduling for federated Kubernetes resources."""

__version__ = "0.4.0"

from kubefed.cluster import ClusterRegistry, ClusterSnapshot
from kubefed.config import ControllerConfig, ConfigError, find_config, load_config
from kubefed.models import (
    APIResource,
    ClusterOverride,
    ClusterPreferences,
    FederatedTypeConfig,
    PropagatedVersion,
    QualifiedName,
    ReconciliationStatus,
)
from kubefed.scheduling.manager import SchedulingManager, start_scheduling_manager
from kubefed.sync.controller import SyncController, start_sync_controller
from kubefed.sync.version import VersionManager
from kubefed.typeregistry import TypeRegistry

__all__ = [
    "APIResource",
    "ClusterOverride",
    "ClusterPreferences",
    "ClusterRegistry",
    "ClusterSnapshot",
    "ConfigError",
    "ControllerConfig",
    "FederatedTypeConfig",
    "find_config",
    "load_config",
    "PropagatedVersion",
    "QualifiedName",
    "ReconciliationStatus",
    "SchedulingManager",
    "start_scheduling_manager",
    "start_sync_controller",
    "SyncController",
    "TypeRegistry",
    "VersionManager",
    "__version__",
]
