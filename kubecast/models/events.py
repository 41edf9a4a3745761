"""Core event data structures and enumerations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class ChangeType(StrEnum):
    """Kind of change reported by the upstream watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class SubscriberState(StrEnum):
    """Lifecycle state of a downstream subscriber."""

    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class OverflowPolicy(StrEnum):
    """What the hub does when a subscriber's outbound queue is full."""

    DISCONNECT = "disconnect"
    DROP_OLDEST = "drop_oldest"


@dataclass(frozen=True)
class Change:
    """Raw upstream notification for a single v1.Event.

    Produced by the EventWatcher, consumed exactly once by the normalizer.
    Fields that may be absent upstream are ``None`` here; validation is the
    normalizer's job.
    """

    change_type: ChangeType | str
    resource_version: str
    involved_object_kind: str | None
    involved_object_name: str | None
    involved_object_namespace: str | None
    message: str | None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class EventObject:
    """The involved object of a NormalizedEvent."""

    kind: str
    name: str
    namespace: str
    message: str


@dataclass(frozen=True)
class NormalizedEvent:
    """Wire record delivered to every subscriber.

    The field set and key order are fixed; ``to_json`` is deterministic.
    """

    type: str
    object: EventObject
    time: str

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "object": {
                "kind": self.object.kind,
                "name": self.object.name,
                "namespace": self.object.namespace,
                "message": self.object.message,
            },
            "time": self.time,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
