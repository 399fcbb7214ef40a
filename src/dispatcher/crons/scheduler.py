"""DispatchScheduler — APScheduler-based runners.

Two recurring jobs, both evaluated in the reference zone:
- daily run: reconcile every open activity for today
- look-ahead run: post tomorrow's preview per channel
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dispatcher.core.engine import Outcome, ReconciliationEngine

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 300


def validate_cron_expression(expr: str) -> str | None:
    """Return None if valid, error message if invalid."""
    try:
        CronTrigger.from_crontab(expr)
        return None
    except (ValueError, TypeError) as e:
        return str(e)


class DispatchScheduler:
    """Schedules the daily and look-ahead runners for one engine."""

    def __init__(self, engine: ReconciliationEngine) -> None:
        from apscheduler.events import EVENT_JOB_MISSED

        self.engine = engine
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._running = False

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "cron_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    def _add(self, job_id: str, expr: str, func: Any) -> None:
        error = validate_cron_expression(expr)
        if error:
            logger.error("cron_schedule_failed", job_id=job_id, cron=expr, error=error)
            return
        self.scheduler.add_job(
            func,
            trigger=CronTrigger.from_crontab(expr, timezone=self.engine.reference_tz),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )

    def schedule(self) -> None:
        settings = self.engine.settings
        self._add("daily_run", settings.daily_run_cron, self.run_daily)
        self._add("lookahead_run", settings.lookahead_run_cron, self.run_lookahead)

    async def start(self) -> None:
        self.schedule()
        self.scheduler.start()
        self._running = True
        logger.info("cron_scheduler_started", total_jobs=len(self.scheduler.get_jobs()))

    async def stop(self) -> None:
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("cron_scheduler_stopped")

    async def run_daily(self) -> None:
        try:
            reports = await self.engine.run_daily()
        except Exception:
            logger.exception("daily_run_failed")
            return
        published = sum(1 for r in reports if r.outcome is Outcome.PUBLISHED)
        logger.info("daily_run_complete", activities=len(reports), published=published)

    async def run_lookahead(self) -> None:
        try:
            await self.engine.run_lookahead()
        except Exception:
            logger.exception("lookahead_run_failed")
