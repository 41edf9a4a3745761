"""Shared fixtures for kubecast integration tests.

Wires a real EventWatcher, normalizer, FanOutHub and SubscriberSessions
together over scripted watch streams and in-memory connections, so whole
pipeline behaviour can be exercised without a Kubernetes cluster.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest

from kubecast.collector.normalizer import normalize
from kubecast.collector.watcher import EventWatcher
from kubecast.hub.fanout import FanOutHub
from kubecast.hub.session import SubscriberSession
from kubecast.models.config import WatchConfig
from kubecast.models.events import Change, OverflowPolicy

from tests.fakes import FakeConnection, WatchScript, make_v1

FAST_WATCH = WatchConfig(timeout_seconds=60, backoff_base=0.001, backoff_cap=0.005)


@dataclass
class Pipeline:
    """A running watcher -> hub pipeline plus the sessions attached to it."""

    hub: FanOutHub
    fatal: list[Exception] = field(default_factory=list)
    watcher: EventWatcher | None = None
    sessions: list[SubscriberSession] = field(default_factory=list)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def on_change(self, change: Change) -> None:
        self.hub.publish(normalize(change))

    def on_fatal(self, exc: Exception) -> None:
        self.fatal.append(exc)

    async def start_watcher(self, script: WatchScript, *resource_versions: str) -> EventWatcher:
        self.watcher = EventWatcher(make_v1(*resource_versions), config=FAST_WATCH, watch_factory=script.factory)
        await self.watcher.start(self.on_change, self.on_fatal)
        return self.watcher

    def connect(
        self,
        conn: FakeConnection | None = None,
        queue_depth: int = 128,
        overflow_policy: OverflowPolicy = OverflowPolicy.DISCONNECT,
    ) -> tuple[SubscriberSession, FakeConnection]:
        conn = conn or FakeConnection()
        session = SubscriberSession(conn, self.hub, queue_depth=queue_depth, overflow_policy=overflow_policy)
        self.hub.register(session)
        self.sessions.append(session)
        self._tasks.append(asyncio.create_task(session.run()))
        return session, conn

    async def close(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        self.hub.shutdown()
        await self.hub.wait_closed(timeout=1.0)
        for session in self.sessions:
            session.abort()
        await asyncio.gather(*self._tasks, return_exceptions=True)


@pytest.fixture
async def pipeline() -> AsyncIterator[Pipeline]:
    p = Pipeline(hub=FanOutHub())
    try:
        yield p
    finally:
        await p.close()
