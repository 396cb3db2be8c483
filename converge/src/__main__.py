from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from converge.src.config import ConfigError, load_config
from converge.src.controller import CacheSyncTimeout, Controller
from converge.src.health import start_health_server
from converge.src.kube import KubeListWatcher, build_apps_client, load_kube_configuration
from converge.src.metrics import METRICS
from converge.src.ratelimit import default_controller_rate_limiter
from converge.src.reconcilers import log_deployment_state

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
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


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


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> int:
    """Entrypoint: watch Deployments in one namespace and reconcile each of them."""
    logger = logging.getLogger(__name__)
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging("INFO")
        logger.error("Invalid configuration: %s", exc)
        return 2
    configure_logging(config.log_level)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    apps_api = build_apps_client()
    stream = KubeListWatcher(
        list_fn=apps_api.list_namespaced_deployment,
        namespace=config.namespace,
        label_selector=config.label_selector,
    )
    controller = Controller(
        stream=stream,
        reconciler=log_deployment_state,
        name="deployments",
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            qps=config.queue_qps,
            burst=config.queue_burst,
        ),
        max_retries=config.max_retries,
        cache_sync_timeout=config.cache_sync_timeout,
        shutdown_timeout=config.shutdown_timeout,
    )
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()
    signalled = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        signalled.set()
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        controller.run(workers=config.workers, stop_event=shutdown_event)
        if not signalled.is_set():
            logger.error("Controller stopped without a shutdown signal; terminating process")
            exit_code = 1
    except CacheSyncTimeout:
        logger.exception("Resource cache never synced; refusing to start workers")
        exit_code = 1
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
