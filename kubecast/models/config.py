"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field

from kubecast.models.events import OverflowPolicy


@dataclass
class WatchConfig:
    """Upstream event watch configuration."""

    timeout_seconds: int = 300
    backoff_base: float = 0.5
    backoff_cap: float = 30.0


@dataclass
class SubscriberConfig:
    """Per-subscriber delivery configuration."""

    queue_depth: int = 128
    overflow_policy: OverflowPolicy = OverflowPolicy.DISCONNECT


@dataclass
class APIConfig:
    """HTTP / WebSocket listener configuration."""

    host: str = "0.0.0.0"
    port: int = 7008
    ws_path: str = "/ws"


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubeCastConfig:
    """Top-level kubecast configuration."""

    watch: WatchConfig = field(default_factory=WatchConfig)
    subscriber: SubscriberConfig = field(default_factory=SubscriberConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
    shutdown_grace_seconds: float = 10.0
