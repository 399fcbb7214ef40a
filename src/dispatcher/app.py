"""Dispatcher application entry point — FastAPI + Slack Bolt.

Architecture:
- FastAPI for the webhook, completion links, documents and health checks
- Slack Bolt (HTTP mode) for the task-card checkbox and mentions
- One ReconciliationEngine per process, built at startup
- APScheduler for the daily and look-ahead runners
"""

from __future__ import annotations

import hmac
import html
import logging
import ssl
from contextlib import asynccontextmanager
from typing import Any

import certifi
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from dispatcher.config import Settings, get_settings
from dispatcher.core.engine import ReconciliationEngine
from dispatcher.core.errors import MalformedNotificationError, WebhookAuthError
from dispatcher.core.notifications import parse_notification
from dispatcher.core.signing import raw_for
from dispatcher.crons.scheduler import DispatchScheduler
from dispatcher.documents.work_order import WorkOrderRenderer
from dispatcher.integrations.pipedrive import PipedriveClient
from dispatcher.slack.handlers import register_handlers
from dispatcher.slack.messenger import SlackMessenger

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def build_engine(settings: Settings) -> ReconciliationEngine:
    """Wire the live collaborators into an engine."""
    ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    slack_client = AsyncWebClient(token=settings.slack_bot_token, ssl=ssl_ctx)
    records = PipedriveClient(
        settings.pipedrive_api_token,
        base_url=settings.pipedrive_base_url,
        timeout_s=settings.pipedrive_timeout_s,
        mutation_attempts=settings.mutation_attempts,
        mutation_backoff_s=settings.mutation_backoff_s,
    )
    return ReconciliationEngine(
        settings,
        records=records,
        messenger=SlackMessenger(slack_client),
        renderer=WorkOrderRenderer(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# HTML PAGES
# ═══════════════════════════════════════════════════════════════════════════════

_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title></head>
<body style="font-family: Helvetica, Arial, sans-serif; text-align: center; padding: 48px 16px;">
<h1>{title}</h1><p>{body}</p></body></html>"""


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        _PAGE.format(title=html.escape(title), body=html.escape(body)),
        status_code=status_code,
    )


def _authenticate(expected: str, received: str | None) -> None:
    """Raise WebhookAuthError unless the shared key matches."""
    if not expected or not received:
        raise WebhookAuthError("missing webhook key")
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        raise WebhookAuthError("webhook key mismatch")


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Settings | None = None,
    engine: ReconciliationEngine | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("app_starting", env=settings.env)
        scheduler: DispatchScheduler | None = None
        if settings.scheduler_enabled:
            scheduler = DispatchScheduler(engine)
            await scheduler.start()

        yield

        logger.info("app_shutting_down")
        if scheduler is not None:
            await scheduler.stop()
        close = getattr(engine.records, "close", None)
        if close is not None:
            await close()

    api = FastAPI(
        title="Dispatcher",
        version="0.1.0",
        description="Pipedrive activity to Slack work-order reconciliation",
        lifespan=lifespan,
    )
    api.state.engine = engine
    api.state.settings = settings

    @api.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "Dispatcher OK"

    @api.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> str:
        return "ok"

    @api.get("/metrics")
    async def metrics_endpoint() -> dict[str, Any]:
        """Live metrics snapshot plus the size of each volatile map."""
        snap = engine.metrics.snapshot()
        snap["tracked_posts"] = len(engine.tracker.tracked_activities())
        return snap

    # ── Record-system webhook ─────────────────────────────────────────

    async def pipedrive_webhook(request: Request) -> Response:
        try:
            _authenticate(settings.webhook_key, request.query_params.get("key"))
        except WebhookAuthError as e:
            logger.warning(
                "webhook_rejected",
                reason=str(e),
                client=request.client.host if request.client else None,
            )
            return PlainTextResponse("Forbidden", status_code=403)
        try:
            payload = await request.json()
            notification = parse_notification(payload)
        except (ValueError, MalformedNotificationError) as e:
            logger.warning("webhook_malformed", error=str(e))
            return PlainTextResponse("Bad request.", status_code=400)

        try:
            reports = await engine.handle_notification(notification)
        except Exception:
            logger.exception(
                "webhook_failed",
                entity=notification.meta.entity,
                action=notification.meta.action.value,
                entity_id=notification.entity_id,
            )
            return PlainTextResponse("Server error.", status_code=500)
        return JSONResponse({
            "ok": True,
            "results": [{"activity_id": r.activity_id, "outcome": r.outcome.value} for r in reports],
        })

    api.add_api_route("/pipedrive-task", pipedrive_webhook, methods=["POST"])
    api.add_api_route("/webhooks/pipedrive", pipedrive_webhook, methods=["POST"])

    # ── Signed completion link ────────────────────────────────────────

    async def complete_link(request: Request) -> Response:
        params = request.query_params
        aid, exp, sig = params.get("aid"), params.get("exp"), params.get("sig")
        did, cid = params.get("did", ""), params.get("cid", "")
        if not aid or not exp or not sig:
            return _page("Invalid link", "This completion link is missing information.", 400)
        if engine.signer.is_expired(exp):
            return _page("Link expired", "This completion link has expired.", 410)
        if not engine.signer.verify(raw_for(aid, did, cid, exp), sig):
            logger.warning("completion_link_bad_signature", activity_id=aid)
            return _page("Invalid link", "This completion link could not be verified.", 403)

        ok = await engine.complete_activity(aid, deal_id=did, announce_channel=cid or None)
        if not ok:
            return _page("Not completed", f"Task {aid} could not be marked complete. Try again later.", 502)
        return _page("Task completed", f"Task {aid} has been marked complete. You can close this page.")

    api.add_api_route("/complete", complete_link, methods=["GET"])
    api.add_api_route("/wo/complete", complete_link, methods=["GET"])

    # ── On-demand document ────────────────────────────────────────────

    @api.get("/wo/pdf")
    async def work_order_pdf(aid: str = "") -> Response:
        if not aid:
            return PlainTextResponse("Missing aid.", status_code=400)
        order = await engine.work_order(aid)
        if order is None:
            return PlainTextResponse("Activity not found.", status_code=404)
        if engine.renderer is None:
            return PlainTextResponse("Document rendering unavailable.", status_code=503)
        try:
            pdf = await engine.renderer.render(order)
        except RuntimeError as e:
            logger.warning("work_order_render_failed", activity_id=aid, error=str(e))
            return PlainTextResponse("Document rendering failed.", status_code=503)
        return Response(
            pdf,
            media_type="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{order.filename}"'},
        )

    # ── Slack ─────────────────────────────────────────────────────────

    if settings.slack_signing_secret:
        bolt = AsyncApp(
            client=engine.messenger.client,
            signing_secret=settings.slack_signing_secret,
            process_before_response=True,
        )
        register_handlers(bolt, engine)
        handler = AsyncSlackRequestHandler(bolt)

        async def slack_events(req: Request) -> Response:
            """Slack events and interactivity endpoint (HTTP mode)."""
            return await handler.handle(req)

        api.add_api_route("/slack/events", slack_events, methods=["POST"])
        api.add_api_route("/slack/interact", slack_events, methods=["POST"])
    else:
        logger.info("slack_bolt_disabled", reason="no signing secret")

    return api


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run the dispatcher over HTTP with uvicorn."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("starting_dispatcher", port=settings.port, env=settings.env)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
