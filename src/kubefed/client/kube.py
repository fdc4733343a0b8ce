"""KubernetesResourceClient: a ResourceClient over the ``kubernetes`` dynamic client.

Supports kubeconfig file, bearer token or in-cluster configuration.

Requires: ``pip install kubefed-core[k8s]``
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from kubefed.client.errors import ApiError, from_api_exception
from kubefed.client.resource import WatchEvent, WatchEventType
from kubefed.models import APIResource

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 5
HTTP_GONE = 410


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubernetesResourceClient. "
            "Install it with: pip install kubefed-core[k8s]"
        ) from None


@dataclass(frozen=True)
class ClusterCredentials:
    """How to reach one API server."""

    kubeconfig: str | None = None
    context: str | None = None
    host: str | None = None
    token: str | None = None
    verify_ssl: bool = True
    in_cluster: bool = False


def build_api_client(credentials: ClusterCredentials) -> Any:
    """Build a kubernetes ApiClient from *credentials*."""
    _check_kubernetes_available()
    from kubernetes import client, config

    if credentials.token:
        configuration = client.Configuration()
        configuration.api_key["authorization"] = credentials.token
        configuration.api_key_prefix["authorization"] = "Bearer"
        if credentials.host:
            configuration.host = credentials.host
        if not credentials.verify_ssl:
            configuration.verify_ssl = False
        return client.ApiClient(configuration)

    if credentials.in_cluster:
        config.load_incluster_config()
        return client.ApiClient()

    kwargs: dict[str, Any] = {}
    if credentials.kubeconfig:
        kwargs["config_file"] = credentials.kubeconfig
    if credentials.context:
        kwargs["context"] = credentials.context
    return config.new_client_from_config(**kwargs)


def _is_api_exception(exc: BaseException) -> bool:
    # Detect kubernetes ApiException by class name to avoid import
    return type(exc).__name__ == "ApiException"


class KubernetesResourceClient:
    """ResourceClient for one kind on one API server."""

    def __init__(self, api_client: Any, api_resource: APIResource) -> None:
        _check_kubernetes_available()
        from kubernetes import dynamic

        self._api_resource = api_resource
        self._dynamic = dynamic.DynamicClient(api_client)
        self._resource: Any = None
        self._lock = threading.Lock()

    @property
    def api_resource(self) -> APIResource:
        return self._api_resource

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self._call(
            lambda r: r.get(name=name, namespace=namespace or None)
        )

    def list(
        self,
        namespace: str = "",
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if namespace:
            kwargs["namespace"] = namespace
        if label_selector:
            kwargs["label_selector"] = ",".join(
                f"{k}={v}" for k, v in sorted(label_selector.items())
            )
        result = self._call(lambda r: r.get(**kwargs))
        return list(result.get("items") or [])

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace = (obj.get("metadata") or {}).get("namespace") or None
        return self._call(lambda r: r.create(body=obj, namespace=namespace))

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace = (obj.get("metadata") or {}).get("namespace") or None
        return self._call(lambda r: r.replace(body=obj, namespace=namespace))

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        namespace = (obj.get("metadata") or {}).get("namespace") or None
        return self._call(lambda r: r.status.replace(body=obj, namespace=namespace))

    def delete(self, namespace: str, name: str) -> None:
        self._call(lambda r: r.delete(name=name, namespace=namespace or None))

    def watch(
        self,
        namespace: str,
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        resource = self._get_resource()
        return self._stream(resource, namespace, stop_event)

    # --- Private ---

    def _stream(
        self,
        resource: Any,
        namespace: str,
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        kwargs: dict[str, Any] = {"timeout": WATCH_TIMEOUT_SECONDS}
        if namespace:
            kwargs["namespace"] = namespace
        # Each reopened watch resumes after the last version seen so that
        # existing objects are not replayed as ADDED events.
        resource_version: str | None = None
        while not stop_event.is_set():
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in resource.watch(**kwargs):
                    if stop_event.is_set():
                        return
                    raw = event.get("raw_object") or {}
                    if event["type"] == "ERROR":
                        if raw.get("code") == HTTP_GONE:
                            logger.debug("Watch version %s expired", resource_version)
                            return
                        raise ApiError(
                            raw.get("message", "watch failed"),
                            status=raw.get("code") or 500,
                            reason=raw.get("reason", ""),
                        )
                    meta = raw.get("metadata") or {}
                    resource_version = meta.get("resourceVersion") or resource_version
                    try:
                        event_type = WatchEventType(event["type"])
                    except ValueError:
                        logger.debug("Ignoring watch event of type %s", event["type"])
                        continue
                    yield WatchEvent(type=event_type, object=raw)
            except Exception as exc:
                if _is_api_exception(exc):
                    error = from_api_exception(exc)
                    if error.status == HTTP_GONE:
                        # The caller relists and opens a fresh watch.
                        logger.debug("Watch version %s expired", resource_version)
                        return
                    raise error from exc
                raise

    def _get_resource(self) -> Any:
        from kubernetes.dynamic.exceptions import ResourceNotFoundError

        with self._lock:
            if self._resource is None:
                try:
                    self._resource = self._dynamic.resources.get(
                        api_version=self._api_resource.api_version,
                        kind=self._api_resource.kind,
                    )
                except ResourceNotFoundError as exc:
                    raise ApiError(
                        f"Resource {self._api_resource.kind} "
                        f"({self._api_resource.api_version}) is not served: {exc}",
                        status=404,
                        reason="NotFound",
                    ) from exc
            return self._resource

    def _call(self, fn: Any) -> Any:
        resource = self._get_resource()
        try:
            result = fn(resource)
        except Exception as exc:
            if _is_api_exception(exc):
                raise from_api_exception(exc) from exc
            raise
        return _to_dict(result)


def _to_dict(result: Any) -> Any:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


def kubernetes_client_factory(api_client: Any):
    """Return a ClientFactory producing KubernetesResourceClients for *api_client*."""
    clients: dict[tuple[str, str], KubernetesResourceClient] = {}
    lock = threading.Lock()

    def factory(api_resource: APIResource) -> KubernetesResourceClient:
        key = (api_resource.group, api_resource.kind)
        with lock:
            if key not in clients:
                clients[key] = KubernetesResourceClient(api_client, api_resource)
            return clients[key]

    return factory
