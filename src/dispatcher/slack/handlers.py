"""Slack event handlers for the dispatcher.

Handles:
- App mentions (online notice)
- The "Mark as complete" checkbox on task cards
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import structlog
from slack_bolt.async_app import AsyncAck, AsyncApp, AsyncSay

from dispatcher.core.effects import ignore_outcome
from dispatcher.slack.blocks import COMPLETE_ACTION_ID

if TYPE_CHECKING:
    from dispatcher.core.engine import ReconciliationEngine

logger = structlog.get_logger()

_TASK_VALUE_RE = re.compile(r"^task_(\d+)$")

ONLINE_NOTICE = "👋 Dispatcher is online. Task cards for today's work orders appear in crew channels."


def activity_id_from_action(action: dict[str, Any]) -> str | None:
    """Pull the activity id out of a checkbox action payload."""
    options = action.get("selected_options") or []
    values = [o.get("value", "") for o in options] or [action.get("value", "")]
    for value in values:
        match = _TASK_VALUE_RE.match(str(value or ""))
        if match:
            return match.group(1)
    return None


def register_handlers(app: AsyncApp, engine: ReconciliationEngine) -> None:
    """Register all Slack event handlers with the Bolt app."""

    # ═══ APP MENTION ════════════════════════════════════════════════════

    @app.event("app_mention")
    async def handle_app_mention(event: dict[str, Any], say: AsyncSay) -> None:
        thread_ts = event.get("thread_ts") or event.get("ts")
        logger.info("app_mention", channel=event.get("channel"), user=event.get("user"))
        await say(text=ONLINE_NOTICE, thread_ts=thread_ts)

    # ═══ TASK CARD CHECKBOX ═════════════════════════════════════════════

    @app.action(COMPLETE_ACTION_ID)
    async def handle_complete_action(ack: AsyncAck, body: dict[str, Any]) -> None:
        await ack()
        action = (body.get("actions") or [{}])[0]
        activity_id = activity_id_from_action(action)
        channel = (body.get("channel") or {}).get("id")
        message_ts = (body.get("message") or {}).get("ts")
        if activity_id is None:
            logger.info("complete_action_without_task", value=action.get("value"))
            return

        logger.info(
            "complete_action_clicked",
            activity_id=activity_id,
            channel=channel,
            user=(body.get("user") or {}).get("id"),
        )
        tracked = engine.tracker.get(activity_id)
        ok = await engine.complete_activity(activity_id, announce_channel=channel)
        if ok and channel and message_ts and (tracked is None or tracked.message_ts != message_ts):
            await ignore_outcome(
                "delete_clicked_card",
                engine.messenger.delete_message(channel, message_ts),
                activity_id=activity_id,
            )
