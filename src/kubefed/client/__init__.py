"""Resource clients: the uniform CRUD + watch surface used by all controllers."""

from kubefed.client.errors import (
    AlreadyExistsError,
    ApiError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    from_api_exception,
)
from kubefed.client.memory import InMemoryCluster, InMemoryResourceClient
from kubefed.client.resource import ClientFactory, ResourceClient, WatchEvent, WatchEventType

__all__ = [
    "AlreadyExistsError",
    "ApiError",
    "ClientFactory",
    "ConflictError",
    "ForbiddenError",
    "from_api_exception",
    "InMemoryCluster",
    "InMemoryResourceClient",
    "NotFoundError",
    "ResourceClient",
    "WatchEvent",
    "WatchEventType",
]
