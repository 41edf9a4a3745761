"""Change -> NormalizedEvent mapping.

Pure and side-effect free. The output shape is the public wire contract, so
the field set, key names and timestamp pattern must not change.
"""

from __future__ import annotations

from datetime import UTC, datetime

from kubecast.models.events import Change, ChangeType, EventObject, NormalizedEvent

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TIME_ABSENT = "N/A"


class MalformedChangeError(ValueError):
    """Raised when a Change lacks the data needed to build a NormalizedEvent."""

    def __init__(self, change: Change, reason: str) -> None:
        super().__init__(f"Malformed change at resourceVersion {change.resource_version!r}: {reason}")
        self.change = change
        self.reason = reason


def format_time(value: datetime | None) -> str:
    """Render a timestamp in the canonical wire pattern, or ``"N/A"``."""
    if value is None:
        return TIME_ABSENT
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime(TIME_FORMAT)


def normalize(change: Change) -> NormalizedEvent:
    """Map *change* to its wire record.

    Raises:
        MalformedChangeError: the change type is unknown or the involved
            object has no kind or name.
    """
    try:
        change_type = ChangeType(change.change_type)
    except ValueError:
        raise MalformedChangeError(change, f"unknown change type {change.change_type!r}") from None

    kind = change.involved_object_kind
    name = change.involved_object_name
    if not isinstance(kind, str) or not kind:
        raise MalformedChangeError(change, "involved object kind is missing")
    if not isinstance(name, str) or not name:
        raise MalformedChangeError(change, "involved object name is missing")

    # Cluster-scoped objects (Node, PersistentVolume) carry no namespace.
    namespace = change.involved_object_namespace or ""
    message = change.message or ""
    if not isinstance(namespace, str) or not isinstance(message, str):
        raise MalformedChangeError(change, "namespace and message must be strings")
    if change.occurred_at is not None and not isinstance(change.occurred_at, datetime):
        raise MalformedChangeError(change, "timestamp is not a datetime")

    return NormalizedEvent(
        type=change_type.value,
        object=EventObject(kind=kind, name=name, namespace=namespace, message=message),
        time=format_time(change.occurred_at),
    )
