from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

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


def build_custom_objects_api() -> CustomObjectsApi:
    """Return a CustomObjects API client using the active kube configuration."""
    return client.CustomObjectsApi()


class CustomResourceSource:
    """List and watch one custom resource type, cluster-wide or in a single namespace.

    Objects come back as plain dicts (the unstructured form of the resource),
    which is what the cache stores and the reconcile action receives.
    """

    def __init__(
        self,
        api: CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        namespace: str = "",
    ) -> None:
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def description(self) -> str:
        scope = self.namespace or "all namespaces"
        return f"{self.plural}.{self.group}/{self.version} in {scope}"

    def _list_call(self) -> tuple[Any, tuple[str, ...]]:
        if self.namespace:
            return (
                self.api.list_namespaced_custom_object,
                (self.group, self.version, self.namespace, self.plural),
            )
        return self.api.list_cluster_custom_object, (self.group, self.version, self.plural)

    def list(self) -> tuple[list[dict[str, Any]], str | None]:
        """Return the current items and the collection resourceVersion to watch from."""
        func, args = self._list_call()
        result = func(*args)
        items = list(result.get("items") or [])
        resource_version = (result.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def watch(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[dict[str, Any]]:
        """Stream watch events starting after *resource_version*.

        The stream ends cleanly when the server-side timeout expires.  Expired
        resource versions surface as ``ApiException(status=410)``.
        """
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        func, args = self._list_call()
        kwargs: dict[str, Any] = {
            "timeout_seconds": timeout_seconds,
            "allow_watch_bookmarks": True,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            yield from watcher.stream(func, *args, **kwargs)
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def stop(self) -> None:
        """Interrupt any open watch stream."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
