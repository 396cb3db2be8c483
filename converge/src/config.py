from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

from converge.src.controller import DEFAULT_MAX_RETRIES
from converge.src.ratelimit import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_BURST,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_QPS,
)


LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:          Namespace whose Deployments are watched.
        label_selector:     Optional label selector narrowing the watch.
        workers:            Number of concurrent reconcile workers.
        max_retries:        Rate-limited requeues allowed before a key is dropped.
        retry_base_delay:   First per-key backoff delay in seconds.
        retry_max_delay:    Ceiling for the per-key backoff delay.
        queue_qps:          Sustained rate of the overall retry token bucket.
        queue_burst:        Size of the overall retry token bucket.
        cache_sync_timeout: Seconds to wait for the initial listing.
        shutdown_timeout:   Seconds to wait for in-flight reconciles on stop.
        health_port:        Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level:          Root logger level name.
    """

    namespace: str = "default"
    label_selector: str = ""
    workers: int = 1
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    retry_max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    queue_qps: float = DEFAULT_QPS
    queue_burst: int = DEFAULT_BURST
    cache_sync_timeout: float = 60.0
    shutdown_timeout: float = 30.0
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got: {raw}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            — namespace to watch (``default``).
        ``LABEL_SELECTOR``             — label selector (empty, everything).
        ``WORKERS``                    — worker threads (``1``).
        ``MAX_RETRIES``                — requeues before a key is dropped (``5``).
        ``RETRY_BASE_DELAY_SECONDS``   — first backoff delay (``0.005``).
        ``RETRY_MAX_DELAY_SECONDS``    — backoff ceiling (``1000``).
        ``QUEUE_QPS`` / ``QUEUE_BURST`` — overall retry bucket (``10`` / ``100``).
        ``CACHE_SYNC_TIMEOUT_SECONDS`` — initial listing deadline (``60``).
        ``SHUTDOWN_TIMEOUT_SECONDS``   — in-flight drain deadline (``30``).
        ``HEALTH_PORT``                — health/metrics port (``8080``).
        ``LOG_LEVEL``                  — log level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    retry_base_delay = env_float(
        "RETRY_BASE_DELAY_SECONDS", DEFAULT_BASE_DELAY_SECONDS, minimum=0, env=values
    )
    retry_max_delay = env_float(
        "RETRY_MAX_DELAY_SECONDS", DEFAULT_MAX_DELAY_SECONDS, minimum=0, env=values
    )
    if retry_max_delay < retry_base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
        )

    queue_qps = env_float("QUEUE_QPS", DEFAULT_QPS, env=values)
    if queue_qps <= 0:
        raise ConfigError(f"QUEUE_QPS must be > 0, got: {queue_qps}")

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, got: {log_level}")

    return ControllerConfig(
        namespace=namespace.strip(),
        label_selector=values.get("LABEL_SELECTOR", "").strip(),
        workers=env_int("WORKERS", 1, minimum=1, maximum=256, env=values),
        max_retries=env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0, env=values),
        retry_base_delay=retry_base_delay,
        retry_max_delay=retry_max_delay,
        queue_qps=queue_qps,
        queue_burst=env_int("QUEUE_BURST", DEFAULT_BURST, minimum=1, env=values),
        cache_sync_timeout=env_float("CACHE_SYNC_TIMEOUT_SECONDS", 60.0, minimum=1, env=values),
        shutdown_timeout=env_float("SHUTDOWN_TIMEOUT_SECONDS", 30.0, minimum=0, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=log_level,
    )
