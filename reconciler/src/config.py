from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from reconciler.src.errors import ConfigError


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        group / version / plural: The custom resource to reconcile.
        namespace:   Namespace to watch; empty watches every namespace.
        workers:     Number of concurrent reconcile workers.
        queue_name:  Name used in queue metrics and logs.
        retry_base_delay_seconds / retry_max_delay_seconds:
                     Per-key exponential backoff bounds.
        rate_limit_qps / rate_limit_burst:
                     Overall token bucket applied to every requeue.
        max_retries: Failures after which a key is dropped; 0 retries forever.
    """

    group: str = "myk8s.io"
    version: str = "v1"
    plural: str = "samples"
    namespace: str = ""
    workers: int = 2
    queue_name: str = "Samples"
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    rate_limit_qps: int = 10
    rate_limit_burst: int = 100
    max_retries: int = 0
    watch_timeout_seconds: int = 300
    simulated_work_seconds: float = 0.1
    shutdown_timeout_seconds: int = 30
    health_port: int = 8080


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


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``RESOURCE_GROUP`` / ``RESOURCE_VERSION`` / ``RESOURCE_PLURAL``
                              : resource to watch (``myk8s.io`` / ``v1`` / ``samples``).
        ``WATCH_NAMESPACE``   : namespace to watch (empty: all namespaces).
        ``WORKERS``           : worker count (``2``).
        ``QUEUE_NAME``        : queue name (``Samples``).
        ``RETRY_BASE_DELAY_MS`` / ``RETRY_MAX_DELAY_SECONDS``: backoff (``5`` / ``1000``).
        ``RATE_LIMIT_QPS`` / ``RATE_LIMIT_BURST``: overall requeue bucket (``10`` / ``100``).
        ``MAX_RETRIES``       : retry cap, ``0`` for unlimited (``0``).
        ``WATCH_TIMEOUT_SECONDS``: server-side watch timeout (``300``).
        ``SIMULATED_WORK_MS`` : delay in the default reconcile action (``100``).
        ``SHUTDOWN_TIMEOUT_SECONDS``: bound on waiting for workers (``30``).
        ``HEALTH_PORT``       : health and metrics port (``8080``).
    """
    values = env if env is not None else os.environ

    retry_base_delay_ms = env_int("RETRY_BASE_DELAY_MS", 5, minimum=1, env=values)
    retry_max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1, env=values)
    if retry_base_delay_ms / 1000 > retry_max_delay_seconds:
        raise ConfigError("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_SECONDS")

    return ControllerConfig(
        group=_env_str(values, "RESOURCE_GROUP", "myk8s.io"),
        version=_env_str(values, "RESOURCE_VERSION", "v1"),
        plural=_env_str(values, "RESOURCE_PLURAL", "samples"),
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        workers=env_int("WORKERS", 2, minimum=1, env=values),
        queue_name=_env_str(values, "QUEUE_NAME", "Samples"),
        retry_base_delay_seconds=retry_base_delay_ms / 1000,
        retry_max_delay_seconds=float(retry_max_delay_seconds),
        rate_limit_qps=env_int("RATE_LIMIT_QPS", 10, minimum=1, env=values),
        rate_limit_burst=env_int("RATE_LIMIT_BURST", 100, minimum=1, env=values),
        max_retries=env_int("MAX_RETRIES", 0, minimum=0, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        simulated_work_seconds=env_int("SIMULATED_WORK_MS", 100, minimum=0, env=values) / 1000,
        shutdown_timeout_seconds=env_int("SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
