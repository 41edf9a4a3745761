"""Fan-out hub and subscriber sessions."""

from kubecast.hub.fanout import CloseReason, FanOutHub, HubClosedError, Subscriber
from kubecast.hub.session import SubscriberSession

__all__ = [
    "CloseReason",
    "FanOutHub",
    "HubClosedError",
    "Subscriber",
    "SubscriberSession",
]
