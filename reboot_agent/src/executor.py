from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod

LOGGER = logging.getLogger(__name__)


class RebootExecutionError(RuntimeError):
    """Raised when a reboot could not be started or confirmed."""


class RebootExecutor(ABC):
    """Performs the physical reboot of a node.

    Implementations are environment specific (remote shell, cloud API, BMC).
    ``execute`` returns once the reboot has been handed off and raises
    :class:`RebootExecutionError` on failure.
    """

    @abstractmethod
    def execute(self, node_name: str) -> None:
        """Start the reboot of ``node_name``."""


class LoggingRebootExecutor(RebootExecutor):
    """Stub executor: records the reboot request without touching the host."""

    def execute(self, node_name: str) -> None:
        LOGGER.info("Rebooting node %s (logging executor; no action taken)", node_name)


class CommandRebootExecutor(RebootExecutor):
    """Run a local command to reboot a node, e.g. ``ssh {node} sudo reboot``.

    ``{node}`` in the template is replaced with the node name after the
    template has been split into arguments, so node names are never
    interpreted by a shell.
    """

    def __init__(self, command_template: str, timeout_seconds: int = 300) -> None:
        argv = shlex.split(command_template)
        if not argv:
            raise ValueError("command_template must not be empty")
        if not any("{node}" in arg for arg in argv):
            raise ValueError("command_template must reference {node}")
        self.argv = argv
        self.timeout_seconds = timeout_seconds

    def command_for(self, node_name: str) -> list[str]:
        return [arg.replace("{node}", node_name) for arg in self.argv]

    def execute(self, node_name: str) -> None:
        command = self.command_for(node_name)
        LOGGER.info("Rebooting node %s with %s", node_name, command[0])
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise RebootExecutionError(
                f"reboot command for {node_name} timed out after {self.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise RebootExecutionError(f"reboot command for {node_name} failed to start: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise RebootExecutionError(
                f"reboot command for {node_name} exited with {completed.returncode}: {stderr}"
            )
        LOGGER.info("Reboot command for node %s completed", node_name)
