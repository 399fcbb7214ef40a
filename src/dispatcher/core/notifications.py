"""Inbound change notifications from the record system.

Pipedrive webhooks come in two shapes:

    v1: {"meta": {"object": "activity", "action": "updated", ...},
         "current": {...}, "previous": {...}}
    v2: {"meta": {"entity": "activity", "action": "change", ...},
         "data": {...}, "previous": {...}}

Both are folded into a ``Notification`` with a normalized action.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dispatcher.core.errors import MalformedNotificationError


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"


_ACTION_SYNONYMS: dict[str, Action] = {
    "added": Action.CREATE,
    "add": Action.CREATE,
    "create": Action.CREATE,
    "created": Action.CREATE,
    "updated": Action.UPDATE,
    "update": Action.UPDATE,
    "change": Action.UPDATE,
    "changed": Action.UPDATE,
    "merged": Action.UPDATE,
    "deleted": Action.DELETE,
    "delete": Action.DELETE,
    "remove": Action.DELETE,
    "removed": Action.DELETE,
}


def normalize_action(raw: Any) -> Action:
    if not isinstance(raw, str):
        return Action.UNKNOWN
    return _ACTION_SYNONYMS.get(raw.strip().lower(), Action.UNKNOWN)


@dataclass(frozen=True)
class NotificationMeta:
    entity: str
    action: Action
    timestamp: str = ""
    request_id: str = ""


@dataclass(frozen=True)
class Notification:
    meta: NotificationMeta
    current: dict[str, Any] = field(default_factory=dict)
    previous: dict[str, Any] = field(default_factory=dict)

    @property
    def snapshot(self) -> dict[str, Any]:
        """Current record, or the previous one for deletes."""
        return self.current or self.previous

    @property
    def entity_id(self) -> Any:
        snap = self.snapshot
        return snap.get("id") if snap else None


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def parse_notification(payload: Any) -> Notification:
    """Interpret a webhook body. Raises MalformedNotificationError."""
    if not isinstance(payload, Mapping):
        raise MalformedNotificationError("payload is not an object")

    meta = _as_dict(payload.get("meta"))
    entity = meta.get("entity") or meta.get("object") or ""
    if not isinstance(entity, str):
        raise MalformedNotificationError("meta.entity is not a string")

    # v1 nests the meta timestamp as ISO; v2 may omit it. Both are opaque here.
    timestamp = meta.get("timestamp") or meta.get("timestamp_micro") or ""
    request_id = (
        meta.get("request_id")
        or meta.get("correlation_id")
        or _as_dict(meta.get("webhook")).get("id")
        or ""
    )

    current = _as_dict(payload.get("data")) or _as_dict(payload.get("current"))
    previous = _as_dict(payload.get("previous"))

    return Notification(
        meta=NotificationMeta(
            entity=entity.strip().lower(),
            action=normalize_action(meta.get("action")),
            timestamp=str(timestamp),
            request_id=str(request_id),
        ),
        current=current,
        previous=previous,
    )
