"""Propagation of federated resources to member clusters.

Components: VersionManager, FederatedResource, ManagedDispatcher, SyncController,
ClusterStatusController.
"""

from kubefed.sync.clusterstatus import ClusterStatusController, start_cluster_status_controller
from kubefed.sync.controller import SyncController, start_sync_controller
from kubefed.sync.resource import FederatedResource
from kubefed.sync.version import VersionManager

__all__ = [
    "ClusterStatusController",
    "FederatedResource",
    "start_cluster_status_controller",
    "start_sync_controller",
    "SyncController",
    "VersionManager",
]
