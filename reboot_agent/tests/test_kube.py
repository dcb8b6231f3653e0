from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from reboot_agent.src.kube import (
    KubeObjectStore,
    ResourceKind,
    build_clients,
    load_kube_configuration,
    template_annotation_patch,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("reboot_agent.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reboot_agent.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "reboot_agent.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("reboot_agent.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("reboot_agent.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        core, apps = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"


def test_template_annotation_patch_without_precondition() -> None:
    body = template_annotation_patch({"kubectl.kubernetes.io/restartedAt": "2026-01-01T00:00:00Z"})

    assert body == {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {"kubectl.kubernetes.io/restartedAt": "2026-01-01T00:00:00Z"}
                }
            }
        }
    }


def test_template_annotation_patch_carries_resource_version() -> None:
    body = template_annotation_patch({"gone": None}, resource_version="42")

    assert body["metadata"] == {"resourceVersion": "42"}
    assert body["spec"]["template"]["metadata"]["annotations"] == {"gone": None}


def _store() -> tuple[KubeObjectStore, MagicMock, MagicMock]:
    core_api = MagicMock()
    apps_api = MagicMock()
    return KubeObjectStore(core_api, apps_api), core_api, apps_api


def test_get_dispatches_per_kind() -> None:
    store, core_api, apps_api = _store()

    store.get(ResourceKind.NODE, None, "node-1")
    store.get(ResourceKind.POD, "apps", "web-1")
    store.get(ResourceKind.REPLICA_SET, "apps", "web-abc")
    store.get(ResourceKind.DEPLOYMENT, "apps", "web")

    core_api.read_node.assert_called_once_with(name="node-1")
    core_api.read_namespaced_pod.assert_called_once_with(name="web-1", namespace="apps")
    apps_api.read_namespaced_replica_set.assert_called_once_with(name="web-abc", namespace="apps")
    apps_api.read_namespaced_deployment.assert_called_once_with(name="web", namespace="apps")


def test_update_replaces_object_with_embedded_resource_version() -> None:
    store, core_api, _ = _store()
    node = SimpleNamespace(metadata=SimpleNamespace(name="node-1", namespace=None, resource_version="5"))
    pod = SimpleNamespace(metadata=SimpleNamespace(name="web-1", namespace="apps", resource_version="9"))

    store.update(ResourceKind.NODE, node)
    store.update(ResourceKind.POD, pod)

    core_api.replace_node.assert_called_once_with(name="node-1", body=node)
    core_api.replace_namespaced_pod.assert_called_once_with(name="web-1", namespace="apps", body=pod)


def test_patch_dispatches_deployment() -> None:
    store, _, apps_api = _store()
    body: dict[str, Any] = template_annotation_patch({"k": "v"}, resource_version="3")

    store.patch(ResourceKind.DEPLOYMENT, "apps", "web", body)

    apps_api.patch_namespaced_deployment.assert_called_once_with(
        name="web", namespace="apps", body=body
    )


def test_update_rejects_kind_without_writer() -> None:
    store, _, _ = _store()
    replica_set = SimpleNamespace(metadata=SimpleNamespace(name="rs", namespace="apps"))

    with pytest.raises(ValueError, match="unsupported kind"):
        store.update(ResourceKind.REPLICA_SET, replica_set)
