from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api

from reboot_agent.src.annotations import (
    REBOOT_IN_PROGRESS_ANNOTATION,
    annotations_changed,
    annotations_of,
)
from reboot_agent.src.config import ControllerConfig
from reboot_agent.src.executor import (
    CommandRebootExecutor,
    LoggingRebootExecutor,
    RebootExecutor,
)
from reboot_agent.src.kube import KubeObjectStore, ResourceKind
from reboot_agent.src.lifecycle import (
    Action,
    RebootState,
    Transition,
    add_restart_marker,
    assume_completed,
    begin_reboot,
    complete_reboot,
    flag_reboot_failure,
    node_became_ready,
    node_is_ready,
    parse_rfc3339,
    plan_node,
    plan_pod,
    utc_now_rfc3339,
)
from reboot_agent.src.metrics import METRICS
from reboot_agent.src.mutation import MutationApplier, MutationOutcome
from reboot_agent.src.owners import resolve_owner_workload
from reboot_agent.src.watch import ResourceEventHandler, ResourceWatch


class ControllerError(RuntimeError):
    """Raised when the controller cannot keep running safely."""


class CacheSyncError(ControllerError):
    """Raised when the initial list of a watched kind does not complete in time."""


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconciliation.

    ``outcome`` is ``no-action`` when the state machine decided nothing
    needed to happen, ``applied`` when the transition was written (and its
    side effect performed), or the name of the failure that stopped it.
    """

    kind: ResourceKind
    name: str
    state: RebootState
    action: Action
    outcome: str


def _name_of(obj: Any) -> str:
    return getattr(getattr(obj, "metadata", None), "name", None) or "<unknown>"


def _creation_time(obj: Any) -> datetime | None:
    raw = getattr(getattr(obj, "metadata", None), "creation_timestamp", None)
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=UTC)
    if isinstance(raw, str):
        return parse_rfc3339(raw)
    return None


class NodeReconciler(ResourceEventHandler):
    """Drives a node through requested -> in-progress -> idle.

    The in-progress marker is written before the reboot executor is
    called, and the executor is only called when this reconciliation's
    write is the one that landed.  A write that conflicts, is skipped
    because another writer already moved the node along, or fails for any
    other reason means no reboot.
    """

    def __init__(
        self,
        applier: MutationApplier,
        executor: RebootExecutor,
        completion_check: Callable[[Any | None, Any], bool] = assume_completed,
        logger: logging.Logger | None = None,
    ) -> None:
        self.applier = applier
        self.executor = executor
        self.completion_check = completion_check
        self.logger = logger or logging.getLogger(__name__)

    def on_added(self, obj: Any) -> None:
        self.reconcile(obj)

    def on_updated(self, old: Any, new: Any) -> None:
        if annotations_changed(annotations_of(old), annotations_of(new)):
            self.reconcile(new, previous=old)
            return
        # Readiness is the completion signal for in-progress nodes.
        if REBOOT_IN_PROGRESS_ANNOTATION not in annotations_of(new):
            return
        if node_is_ready(old) != node_is_ready(new):
            self.reconcile(new, previous=old)

    def on_deleted(self, obj: Any) -> None:
        self.logger.info("Node %s deleted", _name_of(obj))

    def _result(self, node_name: str, transition: Transition, outcome: str) -> ReconcileResult:
        METRICS.reconciliations_total.labels(kind=ResourceKind.NODE.value, outcome=outcome).inc()
        return ReconcileResult(
            kind=ResourceKind.NODE,
            name=node_name,
            state=transition.state,
            action=transition.action,
            outcome=outcome,
        )

    def reconcile(self, node: Any, previous: Any | None = None) -> ReconcileResult:
        """Run one step of the node lifecycle.

        ``previous`` is the prior observation of the same node when the
        reconciliation was triggered by an update; completion checks use it
        to tell a reboot from a node that merely stayed Ready.
        """
        node_name = _name_of(node)
        transition = plan_node(
            annotations_of(node), partial(self.completion_check, previous, node)
        )

        if transition.action is Action.NONE:
            if transition.state is not RebootState.IDLE:
                self.logger.info(
                    "Node %s is %s: %s", node_name, transition.state.value, transition.reason
                )
            return self._result(node_name, transition, "no-action")

        self.logger.info(
            "Node %s is %s: %s", node_name, transition.state.value, transition.reason
        )
        if transition.action is Action.BEGIN_REBOOT:
            return self._begin_reboot(node, node_name, transition)
        return self._complete_reboot(node, node_name, transition)

    def _begin_reboot(self, node: Any, node_name: str, transition: Transition) -> ReconcileResult:
        marked = self.applier.apply(ResourceKind.NODE, node, begin_reboot)
        if not marked.applied:
            self.logger.warning(
                "Not rebooting node %s: in-progress marker was not recorded (%s)",
                node_name,
                marked.outcome.value,
            )
            return self._result(node_name, transition, marked.outcome.value)

        METRICS.transitions_total.labels(
            kind=ResourceKind.NODE.value, action=transition.action.value
        ).inc()
        try:
            self.executor.execute(node_name)
        except Exception:
            METRICS.reboot_failures_total.inc()
            self.logger.exception(
                "Reboot of node %s failed; leaving it in progress for manual resolution",
                node_name,
            )
            flagged = self.applier.apply(ResourceKind.NODE, marked.obj, flag_reboot_failure)
            if not flagged.applied:
                self.logger.error(
                    "Could not flag failed reboot on node %s (%s)",
                    node_name,
                    flagged.outcome.value,
                )
            return self._result(node_name, transition, "executor-failed")

        METRICS.reboots_total.inc()
        self.logger.info("Reboot of node %s handed to executor", node_name)
        return self._result(node_name, transition, MutationOutcome.APPLIED.value)

    def _complete_reboot(self, node: Any, node_name: str, transition: Transition) -> ReconcileResult:
        cleared = self.applier.apply(ResourceKind.NODE, node, complete_reboot)
        if cleared.applied:
            METRICS.transitions_total.labels(
                kind=ResourceKind.NODE.value, action=transition.action.value
            ).inc()
            self.logger.info("Cleared in-progress reboot annotation on node %s", node_name)
        else:
            self.logger.warning(
                "In-progress annotation on node %s was not cleared (%s)",
                node_name,
                cleared.outcome.value,
            )
        return self._result(node_name, transition, cleared.outcome.value)


class PodReconciler(ResourceEventHandler):
    """Restarts the Deployment that owns a pod marked for reboot.

    The restart is a pod template annotation carrying an RFC 3339
    timestamp, written conditionally on the Deployment's
    ``resourceVersion``.  A Deployment whose marker is already at or after
    the pod's creation time has been restarted since this pod was
    scheduled, so repeated events for the same pod do not restart it
    again.
    """

    def __init__(
        self,
        store: KubeObjectStore,
        applier: MutationApplier,
        restart_annotation_key: str,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.applier = applier
        self.restart_annotation_key = restart_annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def on_added(self, obj: Any) -> None:
        self.reconcile(obj)

    def on_updated(self, old: Any, new: Any) -> None:
        if not annotations_changed(annotations_of(old), annotations_of(new)):
            return
        self.reconcile(new)

    def _result(self, pod_name: str, transition: Transition, outcome: str) -> ReconcileResult:
        METRICS.reconciliations_total.labels(kind=ResourceKind.POD.value, outcome=outcome).inc()
        return ReconcileResult(
            kind=ResourceKind.POD,
            name=pod_name,
            state=transition.state,
            action=transition.action,
            outcome=outcome,
        )

    def reconcile(self, pod: Any) -> ReconcileResult:
        metadata = getattr(pod, "metadata", None)
        pod_name = f"{getattr(metadata, 'namespace', None)}/{_name_of(pod)}"
        transition = plan_pod(annotations_of(pod))

        if transition.action is Action.NONE:
            if transition.state is not RebootState.IDLE:
                self.logger.info(
                    "Pod %s is %s: %s", pod_name, transition.state.value, transition.reason
                )
            return self._result(pod_name, transition, "no-action")

        self.logger.info("Pod %s is %s: %s", pod_name, transition.state.value, transition.reason)
        workload = resolve_owner_workload(self.store, pod)
        if workload is None:
            self.logger.warning("No restartable workload found for pod %s", pod_name)
            return self._result(pod_name, transition, MutationOutcome.NOT_FOUND.value)

        timestamp = self.now_fn()
        mutate = partial(
            add_restart_marker,
            key=self.restart_annotation_key,
            timestamp=timestamp,
            not_before=_creation_time(pod),
        )
        restarted = self.applier.apply_template(workload.kind, workload.obj, mutate)

        if restarted.applied:
            METRICS.transitions_total.labels(
                kind=ResourceKind.POD.value, action=transition.action.value
            ).inc()
            METRICS.workload_restarts_total.inc()
            self.logger.info(
                "Triggered rolling restart of %s %s/%s for pod %s",
                workload.kind.value,
                workload.namespace,
                workload.name,
                pod_name,
            )
        elif restarted.outcome is MutationOutcome.SKIPPED:
            self.logger.info(
                "%s %s/%s was already restarted after pod %s was created",
                workload.kind.value,
                workload.namespace,
                workload.name,
                pod_name,
            )
        else:
            self.logger.warning(
                "Rolling restart of %s %s/%s for pod %s did not apply (%s)",
                workload.kind.value,
                workload.namespace,
                workload.name,
                pod_name,
                restarted.outcome.value,
            )
        return self._result(pod_name, transition, restarted.outcome.value)


class RebootController:
    """Owns one watch per reconciled kind and the threads that run them.

    Node and pod watches run on separate threads; events of one kind are
    handled in stream order, so each object's history is reconciled in
    order.  Reconcilers share nothing but the API, and the only
    concurrency control is the ``resourceVersion`` precondition on every
    write.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        config: ControllerConfig,
        executor: RebootExecutor,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.ready = threading.Event()
        self._stop = threading.Event()

        self.store = KubeObjectStore(core_api, apps_api)
        self.applier = MutationApplier(
            self.store,
            max_attempts=config.mutation_max_attempts,
            backoff_seconds=config.mutation_backoff_seconds,
            stop_event=self._stop,
        )
        completion_check = (
            node_became_ready if config.reboot_completion == "node-ready" else assume_completed
        )
        self.node_reconciler = NodeReconciler(
            self.applier, executor, completion_check=completion_check
        )
        self.pod_reconciler = PodReconciler(
            self.store,
            self.applier,
            restart_annotation_key=config.restart_annotation_key,
            now_fn=now_fn,
        )

        self.watches: list[ResourceWatch] = []
        if config.watch_nodes:
            self.watches.append(
                ResourceWatch(
                    ResourceKind.NODE,
                    core_api.list_node,
                    self.node_reconciler,
                    timeout_seconds=config.watch_timeout_seconds,
                )
            )
        if config.watch_pods:
            if config.watch_namespace:
                pod_list_fn = core_api.list_namespaced_pod
                pod_list_kwargs = {"namespace": config.watch_namespace}
            else:
                pod_list_fn = core_api.list_pod_for_all_namespaces
                pod_list_kwargs = {}
            self.watches.append(
                ResourceWatch(
                    ResourceKind.POD,
                    pod_list_fn,
                    self.pod_reconciler,
                    list_kwargs=pod_list_kwargs,
                    timeout_seconds=config.watch_timeout_seconds,
                )
            )

    def synced_events(self) -> dict[str, threading.Event]:
        return {w.kind.value: w.synced for w in self.watches}

    def request_stop(self) -> None:
        """Stop accepting events: interrupt every open watch and abort write retries."""
        self._stop.set()
        for resource_watch in self.watches:
            resource_watch.request_stop()

    def _wait_for_sync(self, shutdown_event: threading.Event) -> bool:
        deadline = time.monotonic() + self.config.cache_sync_timeout_seconds
        while time.monotonic() < deadline:
            if all(w.synced.is_set() for w in self.watches):
                return True
            if shutdown_event.is_set() or any(w.fatal.is_set() for w in self.watches):
                return False
            shutdown_event.wait(timeout=0.1)
        return all(w.synced.is_set() for w in self.watches)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start every watch, wait for the initial sync, then block until shutdown.

        Raises :class:`CacheSyncError` when the initial list does not complete
        within ``cache_sync_timeout_seconds`` and :class:`ControllerError` when
        a watch stops on its own (RBAC denial); both are fatal because the
        controller cannot reason about state it can no longer observe.
        """
        stop = shutdown_event or threading.Event()
        self._stop.clear()

        threads = [
            threading.Thread(
                target=resource_watch.run,
                kwargs={"stop_event": self._stop},
                name=f"watch-{resource_watch.kind.value.lower()}",
                daemon=True,
            )
            for resource_watch in self.watches
        ]
        for thread in threads:
            thread.start()

        try:
            if not self._wait_for_sync(stop):
                if stop.is_set():
                    self.logger.info("Shutdown requested before caches synced")
                    return
                pending = [w.kind.value for w in self.watches if not w.synced.is_set()]
                raise CacheSyncError(f"Timed out waiting for caches to sync: {', '.join(pending)}")

            self.ready.set()
            self.logger.info(
                "Caches synced for %s; reconciling",
                ", ".join(w.kind.value for w in self.watches),
            )

            while not stop.wait(timeout=1.0):
                failed = [w.kind.value for w in self.watches if w.fatal.is_set()]
                if failed:
                    raise ControllerError(f"Watch stopped permanently for: {', '.join(failed)}")
                if not all(thread.is_alive() for thread in threads):
                    raise ControllerError("A watch thread exited without a stop signal")
        finally:
            self.ready.clear()
            self.request_stop()
            for thread in threads:
                thread.join(timeout=self.shutdown_timeout_seconds)
                if thread.is_alive():
                    self.logger.error(
                        "Thread %s did not stop within %ss", thread.name, self.shutdown_timeout_seconds
                    )
            self.logger.info("Controller stopped")


def build_executor(config: ControllerConfig) -> RebootExecutor:
    if config.reboot_executor == "command":
        return CommandRebootExecutor(
            config.reboot_command, timeout_seconds=config.reboot_command_timeout_seconds
        )
    return LoggingRebootExecutor()


def build_controller(
    core_api: CoreV1Api, apps_api: AppsV1Api, config: ControllerConfig
) -> RebootController:
    """Construct a :class:`RebootController` and its executor from loaded config."""
    return RebootController(
        core_api=core_api,
        apps_api=apps_api,
        config=config,
        executor=build_executor(config),
    )
