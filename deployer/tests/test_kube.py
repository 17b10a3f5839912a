from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException, V1ObjectMeta, V1Secret

from deployer.src.kube import KubeObjectStore, build_clients, load_kube_configuration
from deployer.src.resources import MANAGED_OCS, SECRET, STORAGE_CLUSTER


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("deployer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("deployer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "deployer.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("deployer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("deployer.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, custom = build_clients()

    assert core.name == "core"
    assert custom.name == "custom"


def _make_store() -> tuple[KubeObjectStore, MagicMock, MagicMock]:
    core_api = MagicMock()
    custom_api = MagicMock()
    return KubeObjectStore(core_api=core_api, custom_api=custom_api), core_api, custom_api


def test_get_custom_object_uses_group_version_plural() -> None:
    store, _, custom_api = _make_store()
    custom_api.get_namespaced_custom_object.return_value = {"metadata": {"name": "managedocs"}}

    obj = store.get(MANAGED_OCS, "managedocs", "primary")

    assert obj == {"metadata": {"name": "managedocs"}}
    kwargs = custom_api.get_namespaced_custom_object.call_args.kwargs
    assert kwargs == {
        "group": "ocs.openshift.io",
        "version": "v1alpha1",
        "namespace": "primary",
        "plural": "managedocs",
        "name": "managedocs",
    }


def test_get_secret_is_converted_to_dict() -> None:
    store, core_api, _ = _make_store()
    core_api.read_namespaced_secret.return_value = V1Secret(
        metadata=V1ObjectMeta(name="params", namespace="primary"),
        data={"size": "MQ=="},
    )

    obj = store.get(SECRET, "params", "primary")

    assert obj is not None
    assert obj["metadata"]["name"] == "params"
    assert obj["data"] == {"size": "MQ=="}


def test_get_returns_none_on_404() -> None:
    store, _, custom_api = _make_store()
    custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404)

    assert store.get(STORAGE_CLUSTER, "ocs-storagecluster", "primary") is None


def test_get_propagates_other_errors() -> None:
    store, core_api, _ = _make_store()
    core_api.read_namespaced_secret.side_effect = ApiException(status=500)

    with pytest.raises(ApiException):
        store.get(SECRET, "params", "primary")


def test_list_returns_items_and_resource_version() -> None:
    store, _, custom_api = _make_store()
    custom_api.list_namespaced_custom_object.return_value = {
        "metadata": {"resourceVersion": "77"},
        "items": [{"metadata": {"name": "managedocs"}}],
    }

    items, version = store.list(MANAGED_OCS, "primary")

    assert version == "77"
    assert items == [{"metadata": {"name": "managedocs"}}]


def test_create_and_update_route_to_custom_objects_api() -> None:
    store, _, custom_api = _make_store()
    body: dict[str, Any] = {"metadata": {"name": "ocs-storagecluster", "namespace": "primary"}}
    custom_api.create_namespaced_custom_object.return_value = body
    custom_api.replace_namespaced_custom_object.return_value = body

    store.create(STORAGE_CLUSTER, body)
    store.update(STORAGE_CLUSTER, body)

    create_kwargs = custom_api.create_namespaced_custom_object.call_args.kwargs
    assert create_kwargs["plural"] == "storageclusters"
    assert create_kwargs["version"] == "v1"
    replace_kwargs = custom_api.replace_namespaced_custom_object.call_args.kwargs
    assert replace_kwargs["name"] == "ocs-storagecluster"


def test_update_status_uses_status_subresource() -> None:
    store, _, custom_api = _make_store()
    body = {"metadata": {"name": "managedocs", "namespace": "primary"}, "status": {}}
    custom_api.replace_namespaced_custom_object_status.return_value = body

    store.update_status(MANAGED_OCS, body)

    custom_api.replace_namespaced_custom_object_status.assert_called_once()
    custom_api.replace_namespaced_custom_object.assert_not_called()


def test_update_status_rejects_secrets() -> None:
    store, _, _ = _make_store()

    with pytest.raises(ValueError):
        store.update_status(SECRET, {"metadata": {"name": "s", "namespace": "primary"}})


def test_write_requires_identity() -> None:
    store, _, _ = _make_store()

    with pytest.raises(ValueError):
        store.create(STORAGE_CLUSTER, {"metadata": {"name": "ocs-storagecluster"}})


def test_watch_prefers_raw_object_and_skips_empty_events() -> None:
    store, core_api, _ = _make_store()
    watcher = MagicMock()
    watcher.stream.return_value = iter(
        [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "params"}}, "object": None},
            {"type": "MODIFIED", "object": None},
        ]
    )

    events = list(store.watch(SECRET, "primary", "10", 30, watcher))

    assert events == [("ADDED", {"metadata": {"name": "params"}})]
    args, kwargs = watcher.stream.call_args
    assert args[0] is core_api.list_namespaced_secret
    assert kwargs["resource_version"] == "10"
    assert kwargs["timeout_seconds"] == 30
