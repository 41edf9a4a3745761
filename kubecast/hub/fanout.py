"""Fan-out hub: one publisher, many independent subscribers.

Subscriber  -- ABC every downstream connection implements.
FanOutHub   -- Holds the live subscriber set and copies each published
               event onto every subscriber's queue without ever waiting on
               subscriber I/O.

Locking: one ``threading.Lock`` guards the registry. ``publish`` takes its
snapshot and performs every ``offer`` inside the lock, so a subscriber
registering concurrently gets either all of a publish call or none of it,
and a subscriber removed by ``unregister`` is never offered another event.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from enum import StrEnum

from kubecast.models.events import NormalizedEvent, SubscriberState
from kubecast.observability.logging import get_logger
from kubecast.observability.metrics import events_published_total, subscribers

_log = get_logger("hub.fanout")


class HubClosedError(RuntimeError):
    """Raised when registering with a hub that has been shut down."""


class CloseReason(StrEnum):
    """Why a subscriber was closed. Used for logs, metrics and close codes."""

    PEER = "peer_disconnect"
    SEND_FAILED = "send_failed"
    OVERFLOW = "slow_consumer"
    SHUTDOWN = "shutdown"
    ABORTED = "aborted"


class Subscriber(ABC):
    """Abstract downstream subscriber.

    ``offer`` and ``close`` are called by the hub while it holds its lock and
    must return without awaiting anything.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """Opaque identifier, unique for the life of the process."""

    @property
    @abstractmethod
    def state(self) -> SubscriberState:
        """Current lifecycle state."""

    @abstractmethod
    def offer(self, event: NormalizedEvent) -> bool:
        """Enqueue *event* without blocking.

        Returns:
            True  -- the event was queued.
            False -- the subscriber refuses further events and must be
                     disconnected.
        """

    @abstractmethod
    def close(self, reason: CloseReason, drain: bool = False) -> None:
        """Stop accepting events. With ``drain`` queued events are still sent."""

    @abstractmethod
    async def wait_finished(self) -> None:
        """Return once the subscriber's connection loops have exited."""

    @abstractmethod
    def abort(self) -> None:
        """Tear the connection down immediately."""


class FanOutHub:
    """Registry of live subscribers and the publish path that feeds them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, Subscriber] = {}
        self._closing: list[Subscriber] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, subscriber: Subscriber) -> str:
        """Add *subscriber* to the live set and return its handle."""
        with self._lock:
            if self._closed:
                subscriber.close(CloseReason.SHUTDOWN)
                raise HubClosedError("hub is shut down")
            self._subscribers[subscriber.id] = subscriber
            count = len(self._subscribers)
        subscribers.set(count)
        _log.info("subscriber_registered", subscriber_id=subscriber.id, subscribers=count)
        return subscriber.id

    def unregister(self, handle: str, reason: CloseReason = CloseReason.PEER) -> None:
        """Remove and close the subscriber behind *handle*. Idempotent."""
        with self._lock:
            subscriber = self._remove_locked(handle, reason)
            count = len(self._subscribers)
        if subscriber is not None:
            subscribers.set(count)
            _log.info("subscriber_unregistered", subscriber_id=handle, reason=reason, subscribers=count)

    def publish(self, event: NormalizedEvent) -> int:
        """Offer *event* to every live subscriber.

        Subscribers that refuse the event are disconnected in the same
        critical section. Returns the number of subscribers that accepted.
        """
        delivered = 0
        refused: list[str] = []
        with self._lock:
            for handle, subscriber in list(self._subscribers.items()):
                if subscriber.offer(event):
                    delivered += 1
                else:
                    refused.append(handle)
            for handle in refused:
                self._remove_locked(handle, CloseReason.OVERFLOW)
            count = len(self._subscribers)

        events_published_total.inc()
        if refused:
            subscribers.set(count)
            for handle in refused:
                _log.warning("subscriber_overflow", subscriber_id=handle, subscribers=count)
        return delivered

    def shutdown(self) -> None:
        """Unregister and close every subscriber, flushing their queues. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closing = list(self._subscribers.values())
            self._subscribers.clear()
            for subscriber in closing:
                subscriber.close(CloseReason.SHUTDOWN, drain=True)
            self._closing.extend(closing)
        subscribers.set(0)
        _log.info("hub_shutdown", subscribers_closed=len(closing))

    async def wait_closed(self, timeout: float) -> None:
        """Wait for sessions closed by ``shutdown`` to finish, aborting stragglers."""
        with self._lock:
            closing, self._closing = self._closing, []
        if not closing:
            return
        waiters = {asyncio.ensure_future(s.wait_finished()): s for s in closing}
        _, pending = await asyncio.wait(waiters, timeout=timeout)
        for waiter in pending:
            subscriber = waiters[waiter]
            _log.warning("subscriber_abort_after_grace", subscriber_id=subscriber.id, grace_seconds=timeout)
            subscriber.abort()
            waiter.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _remove_locked(self, handle: str, reason: CloseReason) -> Subscriber | None:
        subscriber = self._subscribers.pop(handle, None)
        if subscriber is not None:
            subscriber.close(reason)
        return subscriber
