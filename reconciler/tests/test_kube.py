from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from reconciler.src.kube import (
    CustomResourceSource,
    build_custom_objects_api,
    load_kube_configuration,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("reconciler.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "reconciler.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_custom_objects_api() -> None:
    with patch("reconciler.src.kube.client") as mock_client:
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        api = build_custom_objects_api()

    assert api.name == "custom"


def test_list_cluster_wide_returns_items_and_resource_version() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {
        "items": [{"metadata": {"name": "a"}}],
        "metadata": {"resourceVersion": "123"},
    }
    source = CustomResourceSource(api, "myk8s.io", "v1", "samples")

    items, resource_version = source.list()

    api.list_cluster_custom_object.assert_called_once_with("myk8s.io", "v1", "samples")
    assert items == [{"metadata": {"name": "a"}}]
    assert resource_version == "123"
    assert source.description == "samples.myk8s.io/v1 in all namespaces"


def test_list_namespaced_handles_empty_response() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.return_value = {"items": None}
    source = CustomResourceSource(api, "myk8s.io", "v1", "samples", namespace="team-a")

    items, resource_version = source.list()

    api.list_namespaced_custom_object.assert_called_once_with(
        "myk8s.io", "v1", "team-a", "samples"
    )
    assert items == []
    assert resource_version is None


def test_watch_streams_from_resource_version_with_bookmarks() -> None:
    api = MagicMock()
    source = CustomResourceSource(api, "myk8s.io", "v1", "samples", namespace="team-a")
    event = {"type": "ADDED", "object": {"metadata": {"name": "a"}}}

    with patch("reconciler.src.kube.watch.Watch") as mock_watch_cls:
        watcher = mock_watch_cls.return_value
        watcher.stream.return_value = iter([event])
        events = list(source.watch("42", timeout_seconds=60))

    assert events == [event]
    watcher.stream.assert_called_once_with(
        api.list_namespaced_custom_object,
        "myk8s.io",
        "v1",
        "team-a",
        "samples",
        timeout_seconds=60,
        allow_watch_bookmarks=True,
        resource_version="42",
    )
    watcher.stop.assert_called_once()


def test_watch_without_resource_version_omits_it() -> None:
    api = MagicMock()
    source = CustomResourceSource(api, "myk8s.io", "v1", "samples")

    with patch("reconciler.src.kube.watch.Watch") as mock_watch_cls:
        mock_watch_cls.return_value.stream.return_value = iter([])
        list(source.watch(None, timeout_seconds=30))

    kwargs = mock_watch_cls.return_value.stream.call_args.kwargs
    assert "resource_version" not in kwargs


def test_stop_interrupts_active_watch() -> None:
    api = MagicMock()
    source = CustomResourceSource(api, "myk8s.io", "v1", "samples")

    with patch("reconciler.src.kube.watch.Watch") as mock_watch_cls:
        watcher = mock_watch_cls.return_value
        watcher.stream.return_value = iter([{"type": "ADDED", "object": {}}])
        stream = source.watch(None, timeout_seconds=30)
        next(stream)

        source.stop()
        watcher.stop.assert_called_once()

        stream.close()

    assert watcher.stop.call_count == 2


def test_stop_without_active_watch_is_noop() -> None:
    CustomResourceSource(MagicMock(), "myk8s.io", "v1", "samples").stop()
