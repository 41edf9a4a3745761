"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubecast.models.config import (
    APIConfig,
    KubeCastConfig,
    LogConfig,
    SubscriberConfig,
    WatchConfig,
)
from kubecast.models.events import OverflowPolicy


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBECAST_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None, max_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_overflow_policy(value: str) -> OverflowPolicy:
    try:
        return OverflowPolicy(value.lower())
    except ValueError:
        valid = {p.value for p in OverflowPolicy}
        raise ValueError(f"Invalid overflow policy: {value}. Must be one of {valid}") from None


def _validate_ws_path(value: str) -> str:
    if not value.startswith("/"):
        raise ValueError(f"Invalid WebSocket path: {value!r}. Must start with '/'")
    return value


def load_config() -> KubeCastConfig:
    """Load configuration from KUBECAST_* environment variables."""
    backoff_base = _env_float("WATCH_BACKOFF_BASE", 0.5, min_val=0.01)
    return KubeCastConfig(
        watch=WatchConfig(
            timeout_seconds=_env_int("WATCH_TIMEOUT", 300, min_val=30, max_val=3600),
            backoff_base=backoff_base,
            backoff_cap=_env_float("WATCH_BACKOFF_CAP", 30.0, min_val=backoff_base),
        ),
        subscriber=SubscriberConfig(
            queue_depth=_env_int("SUBSCRIBER_QUEUE_DEPTH", 128, min_val=1, max_val=4096),
            overflow_policy=_validate_overflow_policy(_env("SUBSCRIBER_OVERFLOW_POLICY", "disconnect")),
        ),
        api=APIConfig(
            host=_env("API_HOST", "0.0.0.0"),
            port=_env_int("API_PORT", 7008, min_val=1024, max_val=65535),
            ws_path=_validate_ws_path(_env("WS_PATH", "/ws")),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
        shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE", 10.0, min_val=1.0, max_val=120.0),
    )
