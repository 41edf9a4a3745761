"""One downstream WebSocket subscriber.

A SubscriberSession bridges the hub's push model to a single connection. It
owns a bounded FIFO queue and two loops:

    send loop     -- pops queued events and writes them as text frames.
    receive loop  -- reads (and ignores) client frames; returns on disconnect.

Whichever loop ends first ends the session. Every I/O failure stays inside
the session: it is logged, the session unregisters itself, and nothing is
raised to the hub or the watcher.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol
from uuid import uuid4

from kubecast.hub.fanout import CloseReason, FanOutHub, Subscriber
from kubecast.models.events import NormalizedEvent, OverflowPolicy, SubscriberState
from kubecast.observability.logging import get_logger
from kubecast.observability.metrics import subscriber_disconnects_total, subscriber_events_dropped_total

_log = get_logger("hub.session")

# RFC 6455 close codes
_CLOSE_CODES: dict[CloseReason, int] = {
    CloseReason.PEER: 1000,
    CloseReason.SEND_FAILED: 1011,
    CloseReason.OVERFLOW: 1008,
    CloseReason.SHUTDOWN: 1001,
    CloseReason.ABORTED: 1001,
}


class Connection(Protocol):
    """The subset of ``starlette.websockets.WebSocket`` a session uses."""

    async def send_text(self, data: str) -> None: ...

    async def receive(self) -> Any: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class SubscriberSession(Subscriber):
    """Bounded queue plus send/receive loops for one connection.

    Args:
        connection:      Accepted WebSocket (or any ``Connection``).
        hub:             Hub the session unregisters from when it ends.
        queue_depth:     Events buffered before the overflow policy applies.
        overflow_policy: ``disconnect`` refuses the event so the hub drops
                         the session; ``drop_oldest`` discards the queue head.
    """

    def __init__(
        self,
        connection: Connection,
        hub: FanOutHub,
        queue_depth: int = 128,
        overflow_policy: OverflowPolicy = OverflowPolicy.DISCONNECT,
    ) -> None:
        if queue_depth < 1:
            raise ValueError("queue_depth must be at least 1")
        self._id = uuid4().hex
        self._conn = connection
        self._hub = hub
        self._depth = queue_depth
        self._policy = overflow_policy
        # One slot above the depth is reserved for the close sentinel.
        self._queue: asyncio.Queue[NormalizedEvent | None] = asyncio.Queue(maxsize=queue_depth + 1)
        self._state = SubscriberState.ACTIVE
        self._close_reason: CloseReason | None = None
        self._tasks: tuple[asyncio.Task[None], ...] = ()
        self._finished = asyncio.Event()
        self.sent = 0
        self.dropped = 0

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def close_reason(self) -> CloseReason | None:
        return self._close_reason

    @property
    def queued(self) -> int:
        """Events waiting to be sent."""
        return self._queue.qsize() - (1 if self._state is not SubscriberState.ACTIVE else 0)

    def offer(self, event: NormalizedEvent) -> bool:
        if self._state is not SubscriberState.ACTIVE:
            return False
        if self._queue.qsize() >= self._depth:
            if self._policy is not OverflowPolicy.DROP_OLDEST:
                return False
            self._queue.get_nowait()
            self.dropped += 1
            subscriber_events_dropped_total.labels(policy=self._policy.value).inc()
        self._queue.put_nowait(event)
        return True

    def close(self, reason: CloseReason, drain: bool = False) -> None:
        if self._state is SubscriberState.CLOSED:
            return
        if drain:
            if self._state is SubscriberState.ACTIVE:
                self._state = SubscriberState.DRAINING
                self._close_reason = reason
                self._queue.put_nowait(None)
            return
        self._state = SubscriberState.CLOSED
        self._close_reason = self._close_reason or reason
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        # A send stuck on a slow peer would otherwise keep the session alive.
        if self._tasks:
            self._tasks[0].cancel()

    async def wait_finished(self) -> None:
        await self._finished.wait()

    def abort(self) -> None:
        self.close(CloseReason.ABORTED)
        for task in self._tasks:
            task.cancel()

    async def run(self) -> None:
        """Serve the connection until either loop ends, then tear down."""
        send = asyncio.create_task(self._send_loop(), name=f"subscriber-{self._id}-send")
        receive = asyncio.create_task(self._receive_loop(), name=f"subscriber-{self._id}-receive")
        self._tasks = (send, receive)
        reason = CloseReason.ABORTED
        try:
            await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            reason = self._end_reason(send, receive)
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._hub.unregister(self._id, reason)
            self.close(reason)
            subscriber_disconnects_total.labels(reason=reason.value).inc()
            await self._close_connection(reason)
            self._finished.set()
            _log.info("subscriber_session_ended", subscriber_id=self._id, reason=reason, sent=self.sent, dropped=self.dropped)

    async def _send_loop(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            await self._conn.send_text(event.to_json())
            self.sent += 1

    async def _receive_loop(self) -> None:
        while True:
            message = await self._conn.receive()
            if message.get("type") == "websocket.disconnect":
                return

    def _end_reason(self, send: asyncio.Task[None], receive: asyncio.Task[None]) -> CloseReason:
        if send.done() and not send.cancelled():
            exc = send.exception()
            if exc is not None:
                _log.info("subscriber_send_failed", subscriber_id=self._id, error=str(exc))
                return CloseReason.SEND_FAILED
            return self._close_reason or CloseReason.PEER
        if receive.done() and not receive.cancelled():
            exc = receive.exception()
            if exc is not None:
                _log.info("subscriber_receive_failed", subscriber_id=self._id, error=str(exc))
            return CloseReason.PEER
        return self._close_reason or CloseReason.ABORTED

    async def _close_connection(self, reason: CloseReason) -> None:
        if reason is CloseReason.PEER:
            return
        try:
            await self._conn.close(code=_CLOSE_CODES[reason], reason=reason.value)
        except Exception as exc:
            _log.debug("subscriber_close_failed", subscriber_id=self._id, error=str(exc))
