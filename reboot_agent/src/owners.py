from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from reboot_agent.src.kube import KubeObjectStore, ResourceKind
from reboot_agent.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# Pod -> ReplicaSet -> Deployment. Anything that does not follow this exact
# chain (StatefulSet, DaemonSet, Job, bare ReplicaSet) has no restartable
# top-level workload.
OWNER_CHAIN: tuple[ResourceKind, ...] = (ResourceKind.REPLICA_SET, ResourceKind.DEPLOYMENT)


@dataclass(frozen=True)
class WorkloadRef:
    """Top-level workload that owns a pod, with the object as read from the API."""

    kind: ResourceKind
    namespace: str
    name: str
    obj: Any


def _pick_owner(obj: Any, kind: ResourceKind) -> Any | None:
    """Return the owner reference of *kind*, preferring the managing controller."""
    metadata = getattr(obj, "metadata", None)
    candidates = [
        ref
        for ref in getattr(metadata, "owner_references", None) or []
        if getattr(ref, "kind", None) == kind.value
    ]
    for ref in candidates:
        if getattr(ref, "controller", None):
            return ref
    return candidates[0] if candidates else None


def resolve_owner_workload(store: KubeObjectStore, pod: Any) -> WorkloadRef | None:
    """Walk a pod's owner references up to the Deployment that controls it.

    Returns ``None`` when the chain is broken: no matching owner reference,
    an owner that cannot be read, or an owner whose UID no longer matches
    the reference (deleted and recreated under the same name).  A broken
    chain is a normal outcome and is logged, never raised.
    """
    metadata = getattr(pod, "metadata", None)
    pod_name = getattr(metadata, "name", None) or "<unknown>"
    namespace = getattr(metadata, "namespace", None)
    if not namespace:
        LOGGER.warning("Pod %s has no namespace; cannot resolve owner", pod_name)
        METRICS.owner_resolution_failures_total.inc()
        return None

    current = pod
    current_desc = f"Pod {namespace}/{pod_name}"
    for kind in OWNER_CHAIN:
        ref = _pick_owner(current, kind)
        if ref is None:
            LOGGER.info("%s has no %s owner; no workload to restart", current_desc, kind.value)
            METRICS.owner_resolution_failures_total.inc()
            return None

        try:
            owner = store.get(kind, namespace, ref.name)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to read %s %s/%s owning %s (status=%s)",
                kind.value,
                namespace,
                ref.name,
                current_desc,
                exc.status,
            )
            METRICS.owner_resolution_failures_total.inc()
            return None

        expected_uid = getattr(ref, "uid", None)
        actual_uid = getattr(getattr(owner, "metadata", None), "uid", None)
        if expected_uid and actual_uid and expected_uid != actual_uid:
            LOGGER.warning(
                "%s %s/%s was recreated (uid %s != %s); owner chain of %s is stale",
                kind.value,
                namespace,
                ref.name,
                actual_uid,
                expected_uid,
                current_desc,
            )
            METRICS.owner_resolution_failures_total.inc()
            return None

        current = owner
        current_desc = f"{kind.value} {namespace}/{ref.name}"

    return WorkloadRef(
        kind=OWNER_CHAIN[-1],
        namespace=namespace,
        name=current.metadata.name,
        obj=current,
    )
