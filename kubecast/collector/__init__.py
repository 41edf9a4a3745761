"""Collector package for kubecast.

Ingests the cluster-wide v1.Event watch stream and turns it into wire
records for the fan-out hub.

Submodules
----------
watcher    -- EventWatcher: single resilient watch, resume cursor, back-off.
normalizer -- normalize(): Change -> NormalizedEvent.
"""

from kubecast.collector.normalizer import MalformedChangeError, normalize
from kubecast.collector.watcher import EventWatcher, WatcherFatalError

__all__ = ["EventWatcher", "MalformedChangeError", "WatcherFatalError", "normalize"]
