"""Test doubles for the Kubernetes watch API and WebSocket connections."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from kubecast.models.events import Change, ChangeType, EventObject, NormalizedEvent

# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_raw_event(
    resource_version: str,
    kind: str = "Pod",
    name: str = "web-7",
    namespace: str = "default",
    message: str = "Pulling image",
    first_timestamp: str | None = "2024-01-15T10:30:00Z",
) -> dict[str, Any]:
    """Raw v1.Event JSON as it appears under ``raw_object`` in a watch line."""
    return {
        "kind": "Event",
        "apiVersion": "v1",
        "metadata": {
            "name": f"{name}.{resource_version}",
            "namespace": namespace,
            "resourceVersion": resource_version,
        },
        "involvedObject": {"kind": kind, "name": name, "namespace": namespace},
        "message": message,
        "firstTimestamp": first_timestamp,
    }


def make_notification(
    resource_version: str,
    event_type: str = "ADDED",
    **kwargs: Any,
) -> dict[str, Any]:
    """One item as yielded by ``kubernetes_asyncio.watch.Watch.stream``."""
    raw = make_raw_event(resource_version, **kwargs)
    return {"type": event_type, "object": MagicMock(), "raw_object": raw}


def make_change(
    change_type: ChangeType | str = ChangeType.ADDED,
    resource_version: str = "1",
    kind: str | None = "Pod",
    name: str | None = "web-7",
    namespace: str | None = "default",
    message: str | None = "pod evicted",
    occurred_at: datetime | None = None,
) -> Change:
    return Change(
        change_type=change_type,
        resource_version=resource_version,
        involved_object_kind=kind,
        involved_object_name=name,
        involved_object_namespace=namespace,
        message=message,
        occurred_at=occurred_at,
    )


def make_event(name: str = "web-7", change_type: str = "ADDED") -> NormalizedEvent:
    return NormalizedEvent(
        type=change_type,
        object=EventObject(kind="Pod", name=name, namespace="default", message="msg"),
        time="N/A",
    )


def make_v1(*resource_versions: str) -> MagicMock:
    """CoreV1Api mock whose list call reports the given resourceVersions in turn."""
    v1 = MagicMock()
    versions = list(resource_versions) or ["100"]
    responses = [SimpleNamespace(metadata=SimpleNamespace(resource_version=v)) for v in versions]

    async def _list(*_args: Any, **_kwargs: Any) -> SimpleNamespace:
        return responses.pop(0) if len(responses) > 1 else responses[0]

    v1.list_event_for_all_namespaces = AsyncMock(side_effect=_list)
    return v1


# ---------------------------------------------------------------------------
# Watch stream
# ---------------------------------------------------------------------------


class WatchScript:
    """Scripted replacement for ``kubernetes_asyncio.watch.Watch``.

    Each entry in *streams* is what one opened watch yields: a list of
    notifications and/or exceptions (an exception is raised when reached).
    When the script runs out the next stream blocks until cancelled, like a
    quiet cluster.
    """

    def __init__(self, *streams: list[Any]) -> None:
        self._streams = list(streams)
        self.calls: list[dict[str, Any]] = []

    def factory(self) -> _FakeWatch:
        return _FakeWatch(self)

    def next_stream(self, kwargs: dict[str, Any]) -> list[Any] | None:
        self.calls.append(kwargs)
        if not self._streams:
            return None
        return self._streams.pop(0)


class _FakeWatch:
    def __init__(self, script: WatchScript) -> None:
        self._script = script
        self._items: list[Any] | None = []

    def stream(self, _func: Callable[..., Any], **kwargs: Any) -> _FakeWatch:
        self._items = self._script.next_stream(kwargs)
        return self

    async def __aenter__(self) -> _FakeWatch:
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        return None

    def __aiter__(self) -> Any:
        return self._iterate()

    async def _iterate(self) -> Any:
        if self._items is None:
            await asyncio.Event().wait()
            return
        for item in self._items:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield item


class StreamingV1:
    """CoreV1Api double that speaks the wire format the real ``Watch`` reads.

    Each entry in *streams* is the list of JSON lines one watch request
    returns before the server closes it. Once exhausted, further watch
    requests hang like a quiet cluster.
    """

    def __init__(self, *streams: list[str], resource_version: str = "100") -> None:
        self._streams = list(streams)
        self._resource_version = resource_version
        self.watch_calls: list[dict[str, Any]] = []

    async def list_event_for_all_namespaces(self, **kwargs: Any) -> Any:
        if not kwargs.get("watch"):
            return SimpleNamespace(metadata=SimpleNamespace(resource_version=self._resource_version))
        self.watch_calls.append(kwargs)
        if not self._streams:
            await asyncio.Event().wait()
        return _StreamResponse(self._streams.pop(0))


class _StreamResponse:
    def __init__(self, lines: list[str]) -> None:
        self._lines = [line.encode("utf8") + b"\n" for line in lines]
        self.content = SimpleNamespace(readline=self._readline)

    async def _readline(self) -> bytes:
        return self._lines.pop(0) if self._lines else b""

    def close(self) -> None:
        return None

    def release(self) -> None:
        return None


def watch_line(event_type: str, raw: dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "object": raw})


# ---------------------------------------------------------------------------
# WebSocket connection
# ---------------------------------------------------------------------------


class FakeConnection:
    """In-memory stand-in for a Starlette WebSocket."""

    def __init__(self, fail_sends: bool = False, blocked: bool = False) -> None:
        self.sent: list[str] = []
        self.closed_with: tuple[int, str | None] | None = None
        self.fail_sends = fail_sends
        self._inbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._unblocked = asyncio.Event()
        if not blocked:
            self._unblocked.set()

    async def send_text(self, data: str) -> None:
        await self._unblocked.wait()
        if self.fail_sends:
            raise ConnectionResetError("peer reset")
        self.sent.append(data)

    async def receive(self) -> dict[str, Any]:
        return await self._inbound.get()

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = (code, reason)

    def client_says(self, text: str) -> None:
        self._inbound.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def unblock(self) -> None:
        self._unblocked.set()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the running loop until it holds or *timeout* passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
