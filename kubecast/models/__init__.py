"""Core data structures for kubecast."""

from kubecast.models.config import KubeCastConfig
from kubecast.models.events import (
    Change,
    ChangeType,
    EventObject,
    NormalizedEvent,
    OverflowPolicy,
    SubscriberState,
)

__all__ = [
    "Change",
    "ChangeType",
    "EventObject",
    "KubeCastConfig",
    "NormalizedEvent",
    "OverflowPolicy",
    "SubscriberState",
]
