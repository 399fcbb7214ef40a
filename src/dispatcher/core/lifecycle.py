"""Tracking and retraction of published work-order posts.

For each activity we remember the channel, task-card message and uploaded
file ids of the most recent publish. When the activity stops qualifying
(rescheduled, reassigned, completed, deleted, parent closed) the post is
retracted. Individual deletions are best effort.

Handles live in memory only. After a restart ``retract_by_marker`` can still
find posts by scanning recent channel history. Recognising a message as
belonging to an activity is up to the injected ``MessageMatcher``; the
messaging layer owns that format.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from dispatcher.core.clock import Clock
from dispatcher.core.effects import ignore_outcome
from dispatcher.core.store import ExpiringStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class TrackedPost:
    channel_id: str
    message_ts: str | None
    file_ids: tuple[str, ...] = ()
    deal_id: str = ""


MessageMatcher = Callable[[dict[str, Any], Any], bool]


class PostDeleter(Protocol):
    async def delete_message(self, channel: str, ts: str) -> None: ...

    async def delete_file(self, file_id: str) -> None: ...

    async def history(self, channel: str, limit: int = 200) -> list[dict[str, Any]]: ...


class PostLifecycleTracker:
    def __init__(
        self,
        clock: Clock,
        messenger: PostDeleter,
        matcher: MessageMatcher,
        history_lookback: int = 200,
        max_entries: int = 5000,
    ) -> None:
        self.history_lookback = history_lookback
        self._messenger = messenger
        self._matches = matcher
        self._posts: ExpiringStore[TrackedPost] = ExpiringStore(clock, "post_lifecycle", max_entries)

    def record(self, activity_id: Any, post: TrackedPost) -> None:
        self._posts.put(str(activity_id), post)

    def get(self, activity_id: Any) -> TrackedPost | None:
        return self._posts.get(str(activity_id))

    def tracked_activities(self) -> list[str]:
        return [aid for aid, _ in self._posts.items()]

    def activities_for_deal(self, deal_id: Any) -> list[str]:
        wanted = str(deal_id)
        return [aid for aid, post in self._posts.items() if post.deal_id == wanted]

    async def _delete(self, activity_id: Any, post: TrackedPost) -> None:
        if post.message_ts:
            await ignore_outcome(
                "delete_message",
                self._messenger.delete_message(post.channel_id, post.message_ts),
                activity_id=activity_id,
                channel=post.channel_id,
            )
        for file_id in post.file_ids:
            await ignore_outcome(
                "delete_file",
                self._messenger.delete_file(file_id),
                activity_id=activity_id,
                file_id=file_id,
            )

    async def retract(self, activity_id: Any) -> bool:
        """Delete the tracked post. Returns False when nothing was tracked.

        The record is detached before the first ``await`` so a publish that
        lands mid-retraction is not dropped along with it.
        """
        post = self._posts.pop(str(activity_id))
        if post is None:
            return False
        await self._delete(activity_id, post)
        logger.info(
            "post_retracted",
            activity_id=activity_id,
            channel=post.channel_id,
            files=len(post.file_ids),
        )
        return True

    async def retract_by_marker(self, activity_id: Any, channels: Iterable[str]) -> int:
        """Scan recent history of ``channels`` for posts tagged with the activity."""
        removed = 0
        for channel in dict.fromkeys(c for c in channels if c):
            messages = await ignore_outcome(
                "read_history",
                self._messenger.history(channel, self.history_lookback),
                activity_id=activity_id,
                channel=channel,
            )
            for message in messages or []:
                if not self._matches(message, activity_id):
                    continue
                file_ids = tuple(f["id"] for f in message.get("files") or [] if f.get("id"))
                await self._delete(
                    activity_id,
                    TrackedPost(channel_id=channel, message_ts=message.get("ts"), file_ids=file_ids),
                )
                removed += 1
        if removed:
            logger.info("post_retracted_by_marker", activity_id=activity_id, messages=removed)
        return removed

    async def retract_everywhere(self, activity_id: Any, fallback_channels: Iterable[str]) -> bool:
        """Direct retraction, falling back to a marker scan when no handle is held."""
        if await self.retract(activity_id):
            return True
        return await self.retract_by_marker(activity_id, fallback_channels) > 0
