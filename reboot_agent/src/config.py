from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from reboot_agent.src.annotations import DEFAULT_RESTART_ANNOTATION

REBOOT_EXECUTORS = ("log", "command")
COMPLETION_CHECKS = ("assume", "node-ready")


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace:   Namespace for the pod watch; ``""`` watches all namespaces.
        watch_nodes:       Reconcile node reboot annotations.
        watch_pods:        Reconcile pod reboot annotations.
        restart_annotation_key: Pod template annotation that triggers a rollout.
        mutation_max_attempts:  Conflict retry budget per write.
        mutation_backoff_seconds: Base backoff between conflicting writes.
        cache_sync_timeout_seconds: Deadline for the initial list of every kind.
        watch_timeout_seconds: Server-side timeout for each watch stream.
        reboot_executor:   ``log`` (stub) or ``command``.
        reboot_command:    Command template containing ``{node}``.
        reboot_command_timeout_seconds: Timeout for the reboot command.
        reboot_completion: ``assume`` or ``node-ready``.
        health_port:       Port for ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    watch_namespace: str = ""
    watch_nodes: bool = True
    watch_pods: bool = True
    restart_annotation_key: str = DEFAULT_RESTART_ANNOTATION
    mutation_max_attempts: int = 4
    mutation_backoff_seconds: float = 0.2
    cache_sync_timeout_seconds: int = 60
    watch_timeout_seconds: int = 30
    reboot_executor: str = "log"
    reboot_command: str = ""
    reboot_command_timeout_seconds: int = 300
    reboot_completion: str = "assume"
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _choice(values: Mapping[str, str], name: str, default: str, choices: tuple[str, ...]) -> str:
    value = values.get(name, default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{name} must be one of {', '.join(choices)}, got: {value!r}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every value has a default suitable for running in-cluster with the
    logging reboot executor.  Raises :class:`ConfigError` on invalid values
    so the process exits before touching the cluster.
    """
    values = env if env is not None else os.environ

    watch_nodes = parse_bool(values.get("WATCH_NODES"), default=True)
    watch_pods = parse_bool(values.get("WATCH_PODS"), default=True)
    if not watch_nodes and not watch_pods:
        raise ConfigError("At least one of WATCH_NODES or WATCH_PODS must be enabled")

    restart_annotation_key = values.get("RESTART_ANNOTATION_KEY", DEFAULT_RESTART_ANNOTATION).strip()
    if not restart_annotation_key:
        raise ConfigError("RESTART_ANNOTATION_KEY must be a non-empty string")

    reboot_executor = _choice(values, "REBOOT_EXECUTOR", "log", REBOOT_EXECUTORS)
    reboot_command = values.get("REBOOT_COMMAND", "").strip()
    if reboot_executor == "command" and "{node}" not in reboot_command:
        raise ConfigError("REBOOT_COMMAND must be set and contain {node} when REBOOT_EXECUTOR=command")

    return ControllerConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        watch_nodes=watch_nodes,
        watch_pods=watch_pods,
        restart_annotation_key=restart_annotation_key,
        mutation_max_attempts=env_int(values, "MUTATION_MAX_ATTEMPTS", 4, minimum=1, maximum=10),
        mutation_backoff_seconds=env_int(values, "MUTATION_BACKOFF_MS", 200, minimum=0) / 1000,
        cache_sync_timeout_seconds=env_int(values, "CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=3600),
        reboot_executor=reboot_executor,
        reboot_command=reboot_command,
        reboot_command_timeout_seconds=env_int(
            values, "REBOOT_COMMAND_TIMEOUT_SECONDS", 300, minimum=1
        ),
        reboot_completion=_choice(values, "REBOOT_COMPLETION", "assume", COMPLETION_CHECKS),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
