from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from reboot_agent.src.annotations import (
    REBOOT_ANNOTATION,
    REBOOT_IN_PROGRESS_ANNOTATION,
    REBOOT_NEEDED_ANNOTATION,
    normalize_annotations,
)


class RebootState(str, Enum):
    """Lifecycle state derived from which reboot annotations are present."""

    IDLE = "idle"
    REQUESTED = "requested"
    IN_PROGRESS = "in-progress"
    NEEDS_ATTENTION = "needs-attention"


class Action(str, Enum):
    NONE = "none"
    BEGIN_REBOOT = "begin-reboot"
    COMPLETE_REBOOT = "complete-reboot"
    RESTART_WORKLOAD = "restart-workload"


@dataclass(frozen=True)
class Transition:
    """Decision taken for one observed annotation set.

    ``reason`` is a short human-readable explanation used in log lines so
    that skipped transitions are as visible as taken ones.
    """

    state: RebootState
    action: Action
    reason: str


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime | None:
    """Parse an RFC 3339 timestamp, returning ``None`` for anything unparseable."""
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def derive_state(annotations: Mapping[str, str] | None) -> RebootState:
    """Interpret an annotation set as a lifecycle state.

    In-progress wins over requested: when both are present a reboot is
    already underway and no new one may be triggered.
    """
    present = normalize_annotations(annotations)
    if REBOOT_IN_PROGRESS_ANNOTATION in present:
        return RebootState.IN_PROGRESS
    if REBOOT_ANNOTATION in present:
        return RebootState.REQUESTED
    if REBOOT_NEEDED_ANNOTATION in present:
        return RebootState.NEEDS_ATTENTION
    return RebootState.IDLE


def begin_reboot(annotations: Mapping[str, str] | None) -> dict[str, str] | None:
    """Requested -> InProgress in a single annotation mutation.

    Returns ``None`` if the mapping is not in the requested state, which
    makes the function safe to reapply to a freshly fetched object after
    a write conflict.
    """
    current = normalize_annotations(annotations)
    if derive_state(current) is not RebootState.REQUESTED:
        return None
    current.pop(REBOOT_ANNOTATION, None)
    current.pop(REBOOT_NEEDED_ANNOTATION, None)
    current[REBOOT_IN_PROGRESS_ANNOTATION] = ""
    return current


def complete_reboot(annotations: Mapping[str, str] | None) -> dict[str, str] | None:
    """InProgress -> Idle.

    Refuses when the needed flag marks a failed reboot or when a new
    request raced in alongside the in-progress marker.
    """
    current = normalize_annotations(annotations)
    if REBOOT_IN_PROGRESS_ANNOTATION not in current:
        return None
    if REBOOT_NEEDED_ANNOTATION in current or REBOOT_ANNOTATION in current:
        return None
    current.pop(REBOOT_IN_PROGRESS_ANNOTATION)
    return current


def flag_reboot_failure(annotations: Mapping[str, str] | None) -> dict[str, str] | None:
    """Keep InProgress and add the needed flag so an operator can resolve it."""
    current = normalize_annotations(annotations)
    if REBOOT_IN_PROGRESS_ANNOTATION not in current:
        return None
    current[REBOOT_NEEDED_ANNOTATION] = ""
    return current


def add_restart_marker(
    annotations: Mapping[str, str] | None,
    *,
    key: str,
    timestamp: str,
    not_before: datetime | None = None,
) -> dict[str, str] | None:
    """Set the workload restart marker on pod template annotations.

    When *not_before* is given and the existing marker is already at or
    after it, the restart that would satisfy the request has been issued
    and ``None`` is returned.  Both sides carry whole seconds, so a pod
    created in the same second as an earlier restart counts as covered by
    it: a missed restart is retried on the next request, a duplicate one
    cycles the workload twice.
    """
    current = normalize_annotations(annotations)
    if not_before is not None:
        existing = parse_rfc3339(current.get(key, ""))
        if existing is not None and existing >= not_before:
            return None
    current[key] = timestamp
    return current


def plan_node(
    annotations: Mapping[str, str] | None,
    reboot_completed: Callable[[], bool] | None = None,
) -> Transition:
    """Decide the next step for a node.

    ``reboot_completed`` is consulted only for in-progress nodes; it is the
    completion signal that allows the in-progress marker to be cleared.
    """
    present = normalize_annotations(annotations)
    state = derive_state(present)

    if state is RebootState.REQUESTED:
        return Transition(state, Action.BEGIN_REBOOT, "reboot requested")

    if state is RebootState.IN_PROGRESS:
        if REBOOT_NEEDED_ANNOTATION in present:
            return Transition(state, Action.NONE, "previous reboot failed; manual resolution required")
        if REBOOT_ANNOTATION in present:
            return Transition(state, Action.NONE, "reboot already in progress; ignoring new request")
        if reboot_completed is not None and reboot_completed():
            return Transition(state, Action.COMPLETE_REBOOT, "reboot completion confirmed")
        return Transition(state, Action.NONE, "awaiting reboot completion")

    if state is RebootState.NEEDS_ATTENTION:
        return Transition(state, Action.NONE, "reboot needed; informational only")

    return Transition(state, Action.NONE, "no reboot annotations")


def plan_pod(annotations: Mapping[str, str] | None) -> Transition:
    """Decide the next step for a pod. Only a request leads to an action."""
    state = derive_state(annotations)
    if state is RebootState.REQUESTED:
        return Transition(state, Action.RESTART_WORKLOAD, "reboot requested; restarting owning workload")
    if state is RebootState.IN_PROGRESS:
        return Transition(state, Action.NONE, "reboot in progress; observational only")
    if state is RebootState.NEEDS_ATTENTION:
        return Transition(state, Action.NONE, "reboot needed; informational only")
    return Transition(state, Action.NONE, "no reboot annotations")


def node_is_ready(node: Any) -> bool:
    """Return True when the node reports a ``Ready`` condition with status ``True``."""
    status = getattr(node, "status", None)
    for condition in getattr(status, "conditions", None) or []:
        if getattr(condition, "type", None) == "Ready":
            return getattr(condition, "status", None) == "True"
    return False


def node_became_ready(previous: Any | None, node: Any) -> bool:
    """Return True when the node is Ready and was not Ready in ``previous``.

    With no previous observation (initial list, resync) current readiness
    is accepted.  Otherwise a node that stayed Ready across the update has
    not gone through a reboot yet, which keeps the echo of our own
    in-progress write from clearing the marker.
    """
    if not node_is_ready(node):
        return False
    if previous is None:
        return True
    return not node_is_ready(previous)


def assume_completed(previous: Any | None, node: Any) -> bool:
    """Treat reaching the next reconciliation as proof that the reboot finished."""
    return True
