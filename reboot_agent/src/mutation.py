from __future__ import annotations

import copy
import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from reboot_agent.src.annotations import (
    annotations_changed,
    annotations_of,
    merge_patch_for,
    template_annotations_of,
)
from reboot_agent.src.kube import KubeObjectStore, ResourceKind, template_annotation_patch
from reboot_agent.src.metrics import METRICS

MutateFn = Callable[[dict[str, str]], dict[str, str] | None]


class MutationOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    NOT_FOUND = "not-found"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one fetch-mutate-update loop.

    ``obj`` is the object as last returned by the API: the updated object
    when the write was applied, otherwise the freshest copy that was read
    (``None`` if it could not be read at all).
    """

    kind: ResourceKind
    name: str
    outcome: MutationOutcome
    attempts: int
    obj: Any = None

    @property
    def applied(self) -> bool:
        return self.outcome is MutationOutcome.APPLIED


def _object_name(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "name", None) or "<unknown>"


def _object_namespace(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "namespace", None)


class MutationApplier:
    """Conditional annotation writes with bounded retry on ``409 Conflict``.

    The loop reads annotations from the locally observed object, runs
    ``mutate_fn`` and submits the result conditioned on the object's
    ``resourceVersion``.  On conflict it backs off, re-fetches, and runs
    ``mutate_fn`` again on the fresh state, so a decision is always
    re-evaluated against what it would overwrite.  ``mutate_fn`` returns
    ``None`` to signal that the transition no longer applies (for example
    another writer already performed it); the loop then stops without
    writing.

    This is the only component that writes to the API.  Failures are
    reported through :class:`MutationResult`, never raised, so a failed
    write ends the current reconciliation and the next watch event retries
    naturally.
    """

    def __init__(
        self,
        store: KubeObjectStore,
        max_attempts: int = 4,
        backoff_seconds: float = 0.2,
        max_backoff_seconds: float = 2.0,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.stop_event = stop_event or threading.Event()
        self.logger = logger or logging.getLogger(__name__)

    def apply(self, kind: ResourceKind, obj: Any, mutate_fn: MutateFn) -> MutationResult:
        """Mutate ``metadata.annotations`` and submit with a full conditional replace."""
        return self._run(kind, obj, mutate_fn, annotations_of, self._submit_update)

    def apply_template(self, kind: ResourceKind, obj: Any, mutate_fn: MutateFn) -> MutationResult:
        """Mutate pod template annotations and submit a patch guarded by ``resourceVersion``."""
        return self._run(kind, obj, mutate_fn, template_annotations_of, self._submit_template_patch)

    def _submit_update(
        self, kind: ResourceKind, obj: Any, old: dict[str, str], new: dict[str, str]
    ) -> Any:
        # The observed object may be shared with the watch cache.
        candidate = copy.deepcopy(obj)
        candidate.metadata.annotations = new
        return self.store.update(kind, candidate)

    def _submit_template_patch(
        self, kind: ResourceKind, obj: Any, old: dict[str, str], new: dict[str, str]
    ) -> Any:
        body = template_annotation_patch(
            merge_patch_for(old, new),
            resource_version=getattr(obj.metadata, "resource_version", None),
        )
        return self.store.patch(kind, _object_namespace(obj), _object_name(obj), body)

    def _backoff_delay(self, conflict_number: int) -> float:
        base = self.backoff_seconds * (2 ** (conflict_number - 1))
        jittered = base * (0.5 + random.random())  # noqa: S311
        return min(self.max_backoff_seconds, jittered)

    def _run(
        self,
        kind: ResourceKind,
        obj: Any,
        mutate_fn: MutateFn,
        read: Callable[[Any], dict[str, str]],
        submit: Callable[[ResourceKind, Any, dict[str, str], dict[str, str]], Any],
    ) -> MutationResult:
        name = _object_name(obj)
        namespace = _object_namespace(obj)
        current = obj
        attempt = 0

        while True:
            attempt += 1
            observed = read(current)
            desired = mutate_fn(dict(observed))
            if desired is None:
                self.logger.info(
                    "Skipping %s %s update: transition no longer applies (attempt %d)",
                    kind.value,
                    name,
                    attempt,
                )
                return MutationResult(kind, name, MutationOutcome.SKIPPED, attempt, current)
            if not annotations_changed(observed, desired):
                self.logger.debug("%s %s annotations already up to date", kind.value, name)
                return MutationResult(kind, name, MutationOutcome.UNCHANGED, attempt, current)

            try:
                updated = submit(kind, current, observed, desired)
                self.logger.info(
                    "Updated annotations on %s %s (attempt %d)", kind.value, name, attempt
                )
                return MutationResult(kind, name, MutationOutcome.APPLIED, attempt, updated)
            except ApiException as exc:
                if exc.status == 404:
                    self.logger.warning("%s %s disappeared before update", kind.value, name)
                    return self._failed(kind, name, MutationOutcome.NOT_FOUND, attempt, None)
                if exc.status != 409:
                    self.logger.error(
                        "Failed to update %s %s (status=%s): %s",
                        kind.value,
                        name,
                        exc.status,
                        exc.reason,
                    )
                    return self._failed(kind, name, MutationOutcome.FAILED, attempt, current)

            METRICS.mutation_conflicts_total.labels(kind=kind.value).inc()
            if attempt >= self.max_attempts:
                self.logger.warning(
                    "Giving up on %s %s after %d conflicting attempts; "
                    "the next watch event will retry",
                    kind.value,
                    name,
                    attempt,
                )
                return self._failed(kind, name, MutationOutcome.CONFLICT, attempt, current)

            delay = self._backoff_delay(attempt)
            self.logger.info(
                "Conflict updating %s %s; re-reading in %.2fs (attempt %d/%d)",
                kind.value,
                name,
                delay,
                attempt,
                self.max_attempts,
            )
            if self.stop_event.wait(timeout=delay):
                self.logger.info("Abandoning %s %s update on shutdown", kind.value, name)
                return self._failed(kind, name, MutationOutcome.ABORTED, attempt, current)

            try:
                current = self.store.get(kind, namespace, name)
            except ApiException as exc:
                if exc.status == 404:
                    self.logger.warning("%s %s disappeared while retrying", kind.value, name)
                    return self._failed(kind, name, MutationOutcome.NOT_FOUND, attempt, None)
                self.logger.error(
                    "Failed to re-read %s %s after conflict (status=%s): %s",
                    kind.value,
                    name,
                    exc.status,
                    exc.reason,
                )
                return self._failed(kind, name, MutationOutcome.FAILED, attempt, current)

    @staticmethod
    def _failed(
        kind: ResourceKind, name: str, outcome: MutationOutcome, attempts: int, obj: Any
    ) -> MutationResult:
        METRICS.mutation_failures_total.labels(kind=kind.value, outcome=outcome.value).inc()
        return MutationResult(kind, name, outcome, attempts, obj)
