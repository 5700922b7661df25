from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reconciler.src.config import load_config
from reconciler.src.controller import build_controller
from reconciler.src.errors import CacheSyncAbort
from reconciler.src.health import start_health_server
from reconciler.src.kube import build_custom_objects_api, load_kube_configuration
from reconciler.src.metrics import METRICS

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


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, wire the controller, and run until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    controller = build_controller(config, build_custom_objects_api())

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        synced=controller.informer.has_synced,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Starting controller for %s.%s/%s with %d worker(s)",
        config.plural,
        config.group,
        config.version,
        config.workers,
    )
    try:
        controller.run(config.workers, stop_event=shutdown_event)
    except CacheSyncAbort:
        logger.error("Controller stopped before its cache synced")
        raise SystemExit(1) from None
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
