"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                        # Run all tests
    pytest tests/test_engine.py -v       # Run specific test file

Everything runs in-process: an in-memory record system, an AsyncMock Slack
messenger, and a FakeClock pinned to Sat Oct 17 2026, 10:00 in Los Angeles.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from dispatcher.config import Settings
from dispatcher.core.clock import FakeClock
from dispatcher.core.engine import ReconciliationEngine
from dispatcher.core.errors import RecordSystemError
from dispatcher.slack.messenger import SlackMessenger

TODAY = "2026-10-17"
TOMORROW = "2026-10-18"
HECTOR, KIM = 50, 54


class FakeRecords:
    """In-memory stand-in for the Pipedrive client."""

    def __init__(self) -> None:
        self.activities: dict[str, dict[str, Any]] = {}
        self.deals: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.notes: list[tuple[str, str]] = []
        self.files: list[tuple[str, str]] = []
        self.fail_updates = False
        self.fail_deals: set[str] = set()

    def add_activity(self, **fields: Any) -> dict[str, Any]:
        activity = {"type": "task", "done": False, "due_time": "", **fields}
        self.activities[str(activity["id"])] = activity
        return activity

    def add_deal(self, **fields: Any) -> dict[str, Any]:
        deal = {"status": "open", **fields}
        self.deals[str(deal["id"])] = deal
        return deal

    async def get_activity(self, activity_id: Any) -> dict[str, Any] | None:
        activity = self.activities.get(str(activity_id))
        return dict(activity) if activity else None

    async def get_deal(self, deal_id: Any) -> dict[str, Any] | None:
        if str(deal_id) in self.fail_deals:
            raise RecordSystemError(f"deal {deal_id} unavailable", status_code=500)
        deal = self.deals.get(str(deal_id))
        return dict(deal) if deal else None

    async def list_open_activities(self, deal_id: Any = None) -> list[dict[str, Any]]:
        return [
            dict(a) for a in self.activities.values()
            if not a.get("done") and (deal_id is None or str(a.get("deal_id")) == str(deal_id))
        ]

    async def update_activity(self, activity_id: Any, fields: dict[str, Any]) -> dict[str, Any]:
        if self.fail_updates:
            raise RecordSystemError("update rejected", status_code=400)
        self.updates.append((str(activity_id), dict(fields)))
        self.activities[str(activity_id)].update(fields)
        return dict(self.activities[str(activity_id)])

    async def mark_done(self, activity_id: Any, done_at: str) -> dict[str, Any]:
        return await self.update_activity(activity_id, {"done": True, "marked_as_done_time": done_at})

    async def create_note(self, deal_id: Any, content: str) -> dict[str, Any]:
        self.notes.append((str(deal_id), content))
        return {"id": len(self.notes)}

    async def upload_file(self, deal_id: Any, filename: str, content: bytes) -> dict[str, Any]:
        self.files.append((str(deal_id), filename))
        return {"id": len(self.files)}


class FakeRenderer:
    def __init__(self) -> None:
        self.rendered: list[str] = []

    async def render(self, order: Any) -> bytes:
        self.rendered.append(order.activity_id)
        return b"%PDF-1.7 fake"


def make_messenger() -> AsyncMock:
    messenger = AsyncMock(spec=SlackMessenger)
    counter = itertools.count(1)
    messenger.post_message.side_effect = lambda *a, **kw: f"1760716800.{next(counter):06d}"
    messenger.upload_file.return_value = ["F100"]
    messenger.history.return_value = []
    messenger.lookup_user_id.return_value = "U100"
    messenger.find_channel_id.return_value = None
    return messenger


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "slack_bot_token": "xoxb-test",
        "slack_signing_secret": "",
        "default_channel_id": "C0",
        "webhook_key": "hook-secret",
        "link_secret": "link-secret",
        "base_url": "https://wo.example.com",
        "team_channels": {HECTOR: "C1", KIM: "C4"},
        "team_member_emails": {HECTOR: ["hector@example.com"]},
        "scheduler_enabled": False,
        "mutation_backoff_s": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def clock() -> FakeClock:
    # 17:00 UTC is 10:00 PDT.
    return FakeClock(datetime(2026, 10, 17, 17, 0, tzinfo=timezone.utc))


@pytest.fixture()
def records() -> FakeRecords:
    return FakeRecords()


@pytest.fixture()
def messenger() -> AsyncMock:
    return make_messenger()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def engine(settings, records, messenger, clock) -> ReconciliationEngine:
    return ReconciliationEngine(settings, records, messenger, clock=clock)
