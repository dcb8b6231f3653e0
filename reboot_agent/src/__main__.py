from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reboot_agent.src.config import load_config
from reboot_agent.src.controller import ControllerError, build_controller
from reboot_agent.src.health import start_health_server
from reboot_agent.src.kube import build_clients, load_kube_configuration
from reboot_agent.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, build clients, and run the watches.

    Configuration errors propagate; a failed initial sync or a watch that
    stops permanently exits with status 1.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    core_api, apps_api = build_clients()

    controller = build_controller(core_api=core_api, apps_api=apps_api, config=config)
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        synced=controller.synced_events(),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    except ControllerError:
        logger.exception("Controller failed")
        exit_code = 1
    finally:
        health_server.shutdown()

    if exit_code:
        raise SystemExit(exit_code)
    logger.info("Reboot agent stopped")


if __name__ == "__main__":
    main()
