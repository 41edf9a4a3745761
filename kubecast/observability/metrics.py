"""Prometheus metrics for kubecast.

All collectors live on the default registry and are exposed by the API at
``/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

changes_received_total = Counter(
    "kubecast_changes_received_total",
    "Changes received from the upstream event watch",
    ["type"],
)

changes_malformed_total = Counter(
    "kubecast_changes_malformed_total",
    "Upstream changes skipped because they could not be normalized",
)

watch_reconnects_total = Counter(
    "kubecast_watch_reconnects_total",
    "Times the upstream event watch was reopened",
    ["reason"],
)

events_published_total = Counter(
    "kubecast_events_published_total",
    "Normalized events published to the fan-out hub",
)

subscribers = Gauge(
    "kubecast_subscribers",
    "Currently registered subscribers",
)

subscriber_events_dropped_total = Counter(
    "kubecast_subscriber_events_dropped_total",
    "Events discarded from a full subscriber queue",
    ["policy"],
)

subscriber_disconnects_total = Counter(
    "kubecast_subscriber_disconnects_total",
    "Subscriber sessions that ended",
    ["reason"],
)
