"""Tests for the Slack checkbox and mention handlers."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import HECTOR, TODAY
from dispatcher.slack.blocks import COMPLETE_ACTION_ID
from dispatcher.slack.handlers import ONLINE_NOTICE, activity_id_from_action, register_handlers


class FakeBolt:
    """Captures handlers the way AsyncApp's decorators register them."""

    def __init__(self) -> None:
        self.events: dict[str, object] = {}
        self.actions: dict[str, object] = {}

    def event(self, name):
        def decorator(fn):
            self.events[name] = fn
            return fn
        return decorator

    def action(self, action_id):
        def decorator(fn):
            self.actions[action_id] = fn
            return fn
        return decorator


def checkbox_body(activity_id, channel="C1", ts="999.9"):
    return {
        "user": {"id": "U7"},
        "channel": {"id": channel},
        "message": {"ts": ts},
        "actions": [{
            "action_id": COMPLETE_ACTION_ID,
            "selected_options": [{"value": f"task_{activity_id}"}],
        }],
    }


class TestActionParsing:
    def test_selected_option(self):
        assert activity_id_from_action({"selected_options": [{"value": "task_12"}]}) == "12"

    def test_plain_value(self):
        assert activity_id_from_action({"value": "task_5"}) == "5"

    def test_garbage(self):
        assert activity_id_from_action({"value": "nope"}) is None
        assert activity_id_from_action({}) is None


class TestHandlers:
    @pytest.mark.asyncio
    async def test_mention_replies_in_thread(self, engine):
        bolt = FakeBolt()
        register_handlers(bolt, engine)
        say = AsyncMock()

        await bolt.events["app_mention"]({"channel": "C1", "ts": "1.1", "user": "U7"}, say)

        say.assert_awaited_once_with(text=ONLINE_NOTICE, thread_ts="1.1")

    @pytest.mark.asyncio
    async def test_checkbox_completes_tracked_card(self, engine, records, messenger):
        records.add_deal(id=7, title="Smith Residence")
        records.add_activity(id=1, subject="Extraction", due_date=TODAY, deal_id=7, production_team=HECTOR)
        await engine.reconcile_activity(1)
        tracked_ts = engine.tracker.get(1).message_ts
        bolt = FakeBolt()
        register_handlers(bolt, engine)
        ack = AsyncMock()

        await bolt.actions[COMPLETE_ACTION_ID](ack, checkbox_body(1, ts=tracked_ts))

        ack.assert_awaited_once()
        assert records.activities["1"]["done"] is True
        messenger.delete_message.assert_awaited_once_with("C1", tracked_ts)

    @pytest.mark.asyncio
    async def test_checkbox_on_untracked_card_deletes_clicked_message(self, engine, records, messenger):
        records.add_activity(id=2, subject="Inspection", due_date=TODAY)
        bolt = FakeBolt()
        register_handlers(bolt, engine)

        await bolt.actions[COMPLETE_ACTION_ID](AsyncMock(), checkbox_body(2, ts="555.5"))

        assert records.activities["2"]["done"] is True
        messenger.delete_message.assert_any_await("C1", "555.5")

    @pytest.mark.asyncio
    async def test_checkbox_without_task_value_is_acked_only(self, engine, records, messenger):
        bolt = FakeBolt()
        register_handlers(bolt, engine)
        ack = AsyncMock()
        body = {"actions": [{"value": "nope"}], "channel": {"id": "C1"}}

        await bolt.actions[COMPLETE_ACTION_ID](ack, body)

        ack.assert_awaited_once()
        messenger.post_message.assert_not_awaited()
