from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiClient, ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from deployer.src.resources import SECRET, ResourceKind

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


class KubeObjectStore:
    """Object store facade over the Kubernetes API.

    Every object crosses this boundary as a JSON-shaped ``dict`` so the
    engine treats core Secrets and custom resources alike.  Typed models
    returned by ``CoreV1Api`` are converted with
    ``ApiClient.sanitize_for_serialization``.

    ``get`` maps ``404`` to ``None``; every other ``ApiException`` is
    propagated so the worker's retry policy sees it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        api_client: ApiClient | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.api_client = api_client or ApiClient()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    @staticmethod
    def _identity(obj: dict[str, Any]) -> tuple[str, str]:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise ValueError("object must carry metadata.name and metadata.namespace")
        return name, namespace

    def get(self, kind: ResourceKind, name: str, namespace: str) -> dict[str, Any] | None:
        try:
            if kind == SECRET:
                obj = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
            else:
                obj = self.custom_api.get_namespaced_custom_object(
                    group=kind.group,
                    version=kind.version,
                    namespace=namespace,
                    plural=kind.plural,
                    name=name,
                )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return self._to_dict(obj)

    def list(self, kind: ResourceKind, namespace: str) -> tuple[list[dict[str, Any]], str | None]:
        """Return ``(items, resourceVersion)`` so a watch can resume from the listing."""
        if kind == SECRET:
            listing = self._to_dict(self.core_api.list_namespaced_secret(namespace=namespace))
        else:
            listing = self.custom_api.list_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
            )
        items = [self._to_dict(item) for item in listing.get("items") or []]
        resource_version = (listing.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def create(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        _, namespace = self._identity(obj)
        if kind == SECRET:
            created = self.core_api.create_namespaced_secret(namespace=namespace, body=obj)
        else:
            created = self.custom_api.create_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                body=obj,
            )
        return self._to_dict(created)

    def update(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        name, namespace = self._identity(obj)
        if kind == SECRET:
            updated = self.core_api.replace_namespaced_secret(
                name=name, namespace=namespace, body=obj
            )
        else:
            updated = self.custom_api.replace_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                name=name,
                body=obj,
            )
        return self._to_dict(updated)

    def update_status(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        """Write through the ``/status`` subresource; this never bumps generation."""
        if kind == SECRET:
            raise ValueError("Secrets have no status subresource")
        name, namespace = self._identity(obj)
        updated = self.custom_api.replace_namespaced_custom_object_status(
            group=kind.group,
            version=kind.version,
            namespace=namespace,
            plural=kind.plural,
            name=name,
            body=obj,
        )
        return self._to_dict(updated)

    def watch(
        self,
        kind: ResourceKind,
        namespace: str,
        resource_version: str | None,
        timeout_seconds: int,
        watcher: watch.Watch,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield ``(event_type, object)`` pairs from a single watch stream.

        The caller owns *watcher* so it can call ``watcher.stop()`` from
        another thread to interrupt the stream.
        """
        if kind == SECRET:
            stream = watcher.stream(
                self.core_api.list_namespaced_secret,
                namespace=namespace,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            )
        else:
            stream = watcher.stream(
                self.custom_api.list_namespaced_custom_object,
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            )

        for event in stream:
            obj = event.get("raw_object")
            if not isinstance(obj, dict):
                obj = event.get("object")
            if obj is None:
                continue
            yield str(event.get("type", "")), self._to_dict(obj)
