"""Cluster-wide v1.Event watcher.

EventWatcher keeps a single watch on ``events`` across all namespaces open
for the life of the process and hands every notification to a synchronous
callback as a :class:`~kubecast.models.events.Change`.

Recovery rules:
    * stream end, network errors, other API errors -- reopen from the cursor
      after exponential back-off with full jitter. A stream that ends cleanly
      (server-side timeout) resets the back-off.
    * HTTP 410 Gone -- the cursor was compacted away; drop it and resume
      from the cluster's current resourceVersion.
    * HTTP 401 / 403 -- fatal; ``on_fatal`` is called and the watcher stops.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from kubecast.collector.normalizer import MalformedChangeError
from kubecast.models.config import WatchConfig
from kubecast.models.events import Change, ChangeType
from kubecast.observability.logging import get_logger
from kubecast.observability.metrics import (
    changes_malformed_total,
    changes_received_total,
    watch_reconnects_total,
)

_log = get_logger("collector.watcher")

_FATAL_STATUSES = frozenset({401, 403})
_GONE = 410
_CHANGE_TYPES = {t.value for t in ChangeType}

ChangeHandler = Callable[[Change], None]
FatalHandler = Callable[[Exception], None]


class WatcherFatalError(RuntimeError):
    """The upstream rejected the watch in a way retrying cannot fix."""

    def __init__(self, status: int | None, reason: str) -> None:
        super().__init__(f"event watch failed permanently (status={status}): {reason}")
        self.status = status
        self.reason = reason


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Full-jitter exponential back-off: uniform(0, min(cap, base * 2**attempt))."""
    return random.uniform(0, min(cap, base * (2**attempt)))


def _raw_watch() -> watch.Watch:
    # Notifications stay plain dicts. Deserializing into V1Event would raise
    # on a malformed record before it can be skipped.
    return watch.Watch(return_type="object")


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def change_from_raw(change_type: str, raw: dict[str, Any]) -> Change:
    """Build a Change from the raw JSON of a v1.Event watch notification.

    Missing fields become ``None``; the normalizer decides what is fatal.
    """
    metadata = raw.get("metadata") or {}
    involved = raw.get("involvedObject") or {}
    occurred_at = _parse_timestamp(raw.get("firstTimestamp")) or _parse_timestamp(raw.get("eventTime"))
    return Change(
        change_type=change_type,
        resource_version=str(metadata.get("resourceVersion") or ""),
        involved_object_kind=involved.get("kind"),
        involved_object_name=involved.get("name"),
        involved_object_namespace=involved.get("namespace"),
        message=raw.get("message"),
        occurred_at=occurred_at,
    )


class EventWatcher:
    """Owns the upstream event subscription and its resume cursor.

    Args:
        v1:            kubernetes_asyncio ``CoreV1Api``.
        config:        Watch timeout and back-off settings.
        watch_factory: Callable returning a ``kubernetes_asyncio.watch.Watch``
                       compatible object. Overridden in tests.
    """

    def __init__(
        self,
        v1: Any,
        config: WatchConfig | None = None,
        watch_factory: Callable[[], Any] = _raw_watch,
    ) -> None:
        self._v1 = v1
        self._config = config or WatchConfig()
        self._watch_factory = watch_factory
        self._cursor: str | None = None
        self._failures = 0
        self._connected = False
        self._task: asyncio.Task[None] | None = None

    @property
    def cursor(self) -> str | None:
        """Last resourceVersion observed upstream."""
        return self._cursor

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self, on_change: ChangeHandler, on_fatal: FatalHandler) -> None:
        """Run the watch loop as a background task."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(on_change, on_fatal), name="event-watcher")

    async def stop(self) -> None:
        """Cancel the watch loop and wait for it to exit."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._connected = False

    async def run(self, on_change: ChangeHandler, on_fatal: FatalHandler) -> None:
        """Watch until cancelled or a fatal error is reported."""
        while True:
            try:
                if self._cursor is None:
                    self._cursor = await self._current_resource_version()
                    _log.info("watch_cursor_resolved", resource_version=self._cursor)
                await self._consume(on_change)
                self._failures = 0
                reason = "stream_closed"
            except ApiException as exc:
                if exc.status in _FATAL_STATUSES:
                    _log.critical("watch_fatal", status=exc.status, reason=exc.reason)
                    on_fatal(WatcherFatalError(exc.status, str(exc.reason)))
                    return
                if exc.status == _GONE:
                    _log.warning("watch_cursor_expired", resource_version=self._cursor)
                    self._cursor = None
                    reason = "expired"
                else:
                    _log.warning("watch_api_error", status=exc.status, reason=exc.reason)
                    reason = "api_error"
            except Exception as exc:
                _log.warning("watch_error", error=str(exc), error_type=type(exc).__name__)
                reason = "error"

            watch_reconnects_total.labels(reason=reason).inc()
            delay = backoff_delay(self._failures, self._config.backoff_base, self._config.backoff_cap)
            self._failures += 1
            _log.info("watch_reopening", reason=reason, delay=round(delay, 3), resource_version=self._cursor)
            await asyncio.sleep(delay)

    async def _current_resource_version(self) -> str | None:
        """Resolve "now" so the watch streams only changes from this point on."""
        resp = await self._v1.list_event_for_all_namespaces(limit=1)
        return resp.metadata.resource_version or None

    async def _consume(self, on_change: ChangeHandler) -> None:
        w = self._watch_factory()
        try:
            async with w.stream(
                self._v1.list_event_for_all_namespaces,
                resource_version=self._cursor,
                allow_watch_bookmarks=True,
                timeout_seconds=self._config.timeout_seconds,
            ) as stream:
                self._connected = True
                _log.info("watch_opened", resource_version=self._cursor)
                async for item in stream:
                    self._handle(item, on_change)
        finally:
            self._connected = False

    def _handle(self, item: Any, on_change: ChangeHandler) -> None:
        if not isinstance(item, dict):
            _log.warning("watch_unparseable_line", line=str(item)[:200])
            return
        event_type = item.get("type")
        raw = item.get("raw_object")
        if not isinstance(raw, dict):
            raw = item.get("object") if isinstance(item.get("object"), dict) else {}

        if event_type == "ERROR":
            raise ApiException(status=raw.get("code"), reason=raw.get("message", ""))
        if event_type == "BOOKMARK":
            version = (raw.get("metadata") or {}).get("resourceVersion")
            if version:
                self._cursor = str(version)
            return
        if event_type not in _CHANGE_TYPES:
            _log.debug("watch_event_ignored", type=event_type)
            return

        change = change_from_raw(event_type, raw)
        changes_received_total.labels(type=event_type).inc()
        try:
            on_change(change)
        except MalformedChangeError as exc:
            changes_malformed_total.inc()
            _log.warning("change_skipped", resource_version=change.resource_version, reason=exc.reason)
        if change.resource_version:
            self._cursor = change.resource_version
        self._failures = 0
