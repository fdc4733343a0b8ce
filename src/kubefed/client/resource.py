"""The uniform CRUD + watch interface every controller talks to.

A ``ResourceClient`` is bound to one resource kind on one API server (the
federation host or a member cluster).  Objects travel as plain dicts in
the shape the API server returns them.  Failures raise the exceptions in
:mod:`kubefed.client.errors`.

Concrete implementations:

- :class:`kubefed.client.memory.InMemoryResourceClient` for tests and dry runs
- :class:`kubefed.client.kube.KubernetesResourceClient` backed by the
  ``kubernetes`` dynamic client
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from kubefed.models import APIResource


class WatchEventType(enum.StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    object: dict[str, Any]


@runtime_checkable
class ResourceClient(Protocol):
    """CRUD + watch over a single resource kind."""

    @property
    def api_resource(self) -> APIResource: ...

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        """Return the object or raise ``NotFoundError``."""
        ...

    def list(
        self,
        namespace: str = "",
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects; an empty namespace lists across all namespaces."""
        ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, namespace: str, name: str) -> None: ...

    def watch(
        self,
        namespace: str,
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        """Stream change events until *stop_event* is set.

        Implementations subscribe when ``watch`` is called, not on the first
        ``next()``, so a caller can open the watch before listing.
        """
        ...


ClientFactory = Callable[[APIResource], ResourceClient]
"""Builds a ResourceClient for a kind on one particular API server."""
