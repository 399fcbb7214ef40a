"""Collapse redelivered change notifications.

Webhook delivery is at-least-once and the same logical change often arrives
several times within seconds. The composite key includes the current time
floored to ``bucket_s``: coarser than network jitter, finer than genuine
re-edits. Two distinct edits inside one bucket with an identical key are
collapsed; that is the accepted trade-off.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from dispatcher.core.clock import Clock
from dispatcher.core.notifications import NotificationMeta
from dispatcher.core.store import ExpiringStore

logger = structlog.get_logger()


class EventDedupFilter:
    """Advisory filter; ``enabled=False`` lets everything through."""

    def __init__(
        self,
        clock: Clock,
        bucket_s: int = 10,
        ttl_s: float = 120.0,
        enabled: bool = True,
        max_entries: int = 5000,
    ) -> None:
        self.bucket_s = max(1, int(bucket_s))
        self.ttl_s = ttl_s
        self.enabled = enabled
        self._clock = clock
        self._seen: ExpiringStore[float] = ExpiringStore(clock, "event_dedup", max_entries)

    def key_for(self, meta: NotificationMeta, activity: Mapping[str, Any]) -> str:
        bucket = int(self._clock.timestamp()) // self.bucket_s
        return "|".join([
            str(activity.get("id", "")),
            meta.timestamp,
            meta.request_id,
            str(activity.get("update_time") or activity.get("update_time_utc") or ""),
            "1" if activity.get("done") else "0",
            str(bucket),
        ])

    def already_handled(self, meta: NotificationMeta, activity: Mapping[str, Any]) -> bool:
        """Check-and-insert in one synchronous step.

        Must be called before the caller's first ``await`` so that two tasks
        carrying the same key cannot both observe "not seen".
        """
        if not self.enabled:
            return False
        key = self.key_for(meta, activity)
        inserted = self._seen.put_if_absent(
            key, self._clock.timestamp() + self.ttl_s, self.ttl_s
        )
        if not inserted:
            logger.info("event_dedup_skip", activity_id=activity.get("id"), key=key)
        return not inserted
