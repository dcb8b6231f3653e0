from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Closed set of object kinds the controller reads or writes."""

    NODE = "Node"
    POD = "Pod"
    REPLICA_SET = "ReplicaSet"
    DEPLOYMENT = "Deployment"


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


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def template_annotation_patch(
    annotations: dict[str, str | None], resource_version: str | None = None
) -> dict[str, Any]:
    """Build a patch body that edits a workload's pod template annotations.

    Changing a pod template annotation is the mechanism ``kubectl rollout
    restart`` relies on.  When *resource_version* is given it is sent as
    ``metadata.resourceVersion`` so the API server rejects the patch with
    ``409 Conflict`` if the object changed since it was read.
    """
    body: dict[str, Any] = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": annotations
                }
            }
        }
    }
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    return body


class KubeObjectStore:
    """Typed get / update / patch over the handful of kinds the controller touches.

    Every call maps one :class:`ResourceKind` onto the matching generated
    client method.  ``update`` is a full replace, so the object's
    ``metadata.resource_version`` acts as the optimistic-concurrency
    precondition and a stale write surfaces as ``ApiException(409)``.
    Errors are never swallowed here; callers decide how to handle them.
    """

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api

    def get(self, kind: ResourceKind, namespace: str | None, name: str) -> Any:
        if kind is ResourceKind.NODE:
            return self.core_api.read_node(name=name)
        if kind is ResourceKind.POD:
            return self.core_api.read_namespaced_pod(name=name, namespace=namespace)
        if kind is ResourceKind.REPLICA_SET:
            return self.apps_api.read_namespaced_replica_set(name=name, namespace=namespace)
        if kind is ResourceKind.DEPLOYMENT:
            return self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
        raise ValueError(f"unsupported kind: {kind}")

    def update(self, kind: ResourceKind, obj: Any) -> Any:
        metadata = obj.metadata
        if kind is ResourceKind.NODE:
            return self.core_api.replace_node(name=metadata.name, body=obj)
        if kind is ResourceKind.POD:
            return self.core_api.replace_namespaced_pod(
                name=metadata.name, namespace=metadata.namespace, body=obj
            )
        if kind is ResourceKind.DEPLOYMENT:
            return self.apps_api.replace_namespaced_deployment(
                name=metadata.name, namespace=metadata.namespace, body=obj
            )
        raise ValueError(f"unsupported kind for update: {kind}")

    def patch(
        self, kind: ResourceKind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> Any:
        if kind is ResourceKind.NODE:
            return self.core_api.patch_node(name=name, body=body)
        if kind is ResourceKind.POD:
            return self.core_api.patch_namespaced_pod(name=name, namespace=namespace, body=body)
        if kind is ResourceKind.DEPLOYMENT:
            return self.apps_api.patch_namespaced_deployment(
                name=name, namespace=namespace, body=body
            )
        raise ValueError(f"unsupported kind for patch: {kind}")
