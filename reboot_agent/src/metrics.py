from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the reboot agent on ``/metrics``.

    Most series carry a ``kind`` label (``Node``, ``Pod``, ``Deployment``)
    so node reboots and workload restarts can be alerted on separately.
    """

    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_reconciliations_total",
            "Total reconciliations by resource kind and outcome",
            ["kind", "outcome"],
        )
    )
    transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_transitions_total",
            "Total lifecycle transitions written to the API",
            ["kind", "action"],
        )
    )
    reboots_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_reboots_total",
            "Total node reboots handed to the reboot executor",
        )
    )
    reboot_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_reboot_failures_total",
            "Total reboot executor failures",
        )
    )
    workload_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_workload_restarts_total",
            "Total workload rolling restarts triggered from pod reboot requests",
        )
    )
    owner_resolution_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_owner_resolution_failures_total",
            "Total pods whose owning workload could not be resolved",
        )
    )
    mutation_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_mutation_conflicts_total",
            "Total 409 conflicts observed while writing annotations",
            ["kind"],
        )
    )
    mutation_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_mutation_failures_total",
            "Total annotation writes that ended without being applied",
            ["kind", "outcome"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    cache_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "reboot_agent_cache_synced",
            "Whether the initial list for a kind has completed (1=yes, 0=no)",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reboot_agent",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
