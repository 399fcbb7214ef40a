"""Slack integration: Web API facade and Block Kit composition."""

from dispatcher.slack.blocks import (
    COMPLETE_ACTION_ID,
    activity_marker,
    message_mentions_activity,
)
from dispatcher.slack.messenger import SlackMessenger

__all__ = [
    "COMPLETE_ACTION_ID",
    "SlackMessenger",
    "activity_marker",
    "message_mentions_activity",
]
