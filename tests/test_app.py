"""HTTP surface tests: webhook, completion links, documents, health."""

from __future__ import annotations

from unittest.mock import AsyncMock
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from conftest import HECTOR, TODAY, FakeRenderer
from dispatcher.app import create_app
from dispatcher.core.engine import ReconciliationEngine


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def seed(records):
    records.add_deal(id=7, title="Smith Residence")
    records.add_activity(id=1, subject="Extraction", due_date=TODAY, deal_id=7, production_team=HECTOR)


def webhook_body(activity_id=1):
    return {
        "meta": {"object": "activity", "action": "updated", "timestamp": "1760720400", "request_id": "r-1"},
        "current": {"id": activity_id},
    }


@pytest.fixture()
def client(settings, engine) -> TestClient:
    return TestClient(create_app(settings, engine))


def path_and_query(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


# ─────────────────────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────────────────────

class TestHealth:
    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.text == "Dispatcher OK"

    def test_healthz(self, client):
        assert client.get("/healthz").text == "ok"

    def test_metrics(self, client):
        body = client.get("/metrics").json()
        assert "counters" in body and "histograms" in body
        assert body["tracked_posts"] == 0

    def test_slack_routes_absent_without_signing_secret(self, client):
        assert client.post("/slack/events", json={}).status_code in (404, 405)


# ─────────────────────────────────────────────────────────────────────────────
# Webhook
# ─────────────────────────────────────────────────────────────────────────────

class TestWebhook:
    @pytest.mark.parametrize("query", ["", "?key=wrong"])
    def test_bad_key_rejected(self, client, records, query):
        seed(records)
        resp = client.post(f"/pipedrive-task{query}", json=webhook_body())
        assert resp.status_code == 403
        assert records.updates == []

    def test_malformed_json(self, client):
        resp = client.post(
            "/pipedrive-task?key=hook-secret",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400

    def test_malformed_payload(self, client):
        resp = client.post("/pipedrive-task?key=hook-secret", json=["not", "an", "object"])
        assert resp.status_code == 400

    @pytest.mark.parametrize("path", ["/pipedrive-task", "/webhooks/pipedrive"])
    def test_valid_notification_publishes(self, client, records, messenger, path):
        seed(records)
        resp = client.post(f"{path}?key=hook-secret", json=webhook_body())
        assert resp.status_code == 200
        assert resp.json()["results"] == [{"activity_id": "1", "outcome": "published"}]
        assert messenger.post_message.await_count == 1

    def test_redelivery_reports_duplicate(self, client, records):
        seed(records)
        client.post("/pipedrive-task?key=hook-secret", json=webhook_body())
        resp = client.post("/pipedrive-task?key=hook-secret", json=webhook_body())
        assert resp.json()["results"][0]["outcome"] == "duplicate"

    def test_unexpected_failure_is_generic_500(self, client, engine):
        engine.handle_notification = AsyncMock(side_effect=RuntimeError("kaboom"))
        resp = client.post("/pipedrive-task?key=hook-secret", json=webhook_body())
        assert resp.status_code == 500
        assert resp.text == "Server error."


# ─────────────────────────────────────────────────────────────────────────────
# Completion links
# ─────────────────────────────────────────────────────────────────────────────

class TestCompletionLink:
    def test_missing_params(self, client):
        assert client.get("/complete?aid=1").status_code == 400

    def test_expired(self, client, engine, clock):
        url = engine.signer.completion_url(1, 7, "C1", ttl_s=60)
        clock.advance(61)
        assert client.get(path_and_query(url)).status_code == 410

    def test_bad_signature(self, client, engine, records):
        seed(records)
        url = engine.signer.completion_url(1, 7, "C1").replace("did=7", "did=8")
        assert client.get(path_and_query(url)).status_code == 403
        assert records.activities["1"]["done"] is False

    @pytest.mark.parametrize("legacy", [False, True])
    def test_valid_link_completes(self, client, engine, records, messenger, legacy):
        seed(records)
        url = path_and_query(engine.signer.completion_url(1, 7, "C1"))
        if legacy:
            url = url.replace("/complete?", "/wo/complete?")

        resp = client.get(url)

        assert resp.status_code == 200
        assert "Task completed" in resp.text
        assert records.activities["1"]["done"] is True
        assert messenger.post_message.await_args.args[0] == "C1"

    def test_record_failure_page(self, client, engine, records):
        seed(records)
        records.fail_updates = True
        resp = client.get(path_and_query(engine.signer.completion_url(1)))
        assert resp.status_code == 502


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkOrderPdf:
    def test_renders_pdf(self, settings, records, messenger, clock):
        engine = ReconciliationEngine(settings, records, messenger, clock=clock, renderer=FakeRenderer())
        seed(records)
        client = TestClient(create_app(settings, engine))

        resp = client.get("/wo/pdf?aid=1")

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/pdf"
        assert resp.content.startswith(b"%PDF")
        assert "WO_Smith_Residence_Extraction.pdf" in resp.headers["content-disposition"]

    def test_missing_activity(self, client):
        assert client.get("/wo/pdf?aid=404").status_code == 404

    def test_missing_aid(self, client):
        assert client.get("/wo/pdf").status_code == 400

    def test_no_renderer(self, client, records):
        seed(records)
        assert client.get("/wo/pdf?aid=1").status_code == 503
