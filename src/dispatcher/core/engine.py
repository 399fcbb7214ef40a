"""Reconciliation engine: change notifications in, idempotent posts out.

Pipeline for one activity::

    notification ─► dedup ─► fetch activity ─► done? ─► type/blocklist screen
        ─► fetch deal ─► due normalize + resolve crew ─► rename/defend
        ─► gating (deal active, due on target date) ─► fingerprint gate
        ─► publish ─► track post

A deal-level notification re-runs the pipeline for each open child activity,
one after another inside the same task.

The engine owns every volatile map (dedup keys, fingerprints, stabilizer
states, tracked posts). It is built once at startup and handed to the HTTP
layer and the scheduled runners; nothing here reads module-level state.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from dispatcher.config import Settings
from dispatcher.core.assignment import UNRESOLVED, AssignmentResolver, Resolution, TeamDirectory
from dispatcher.core.clock import Clock, SystemClock
from dispatcher.core.dedup import EventDedupFilter
from dispatcher.core.due import DueInfo, load_zone, normalize_due
from dispatcher.core.effects import ignore_outcome
from dispatcher.core.errors import RecordSystemError
from dispatcher.core.fingerprint import PublishFingerprintGate
from dispatcher.core.gating import GatingPolicy, Verdict
from dispatcher.core.lifecycle import PostLifecycleTracker
from dispatcher.core.notifications import Action, Notification
from dispatcher.core.publisher import Publisher, Renderer
from dispatcher.core.signing import LinkSigner
from dispatcher.core.stabilizer import LabelStabilizer
from dispatcher.core.store import ExpiringStore
from dispatcher.documents.work_order import WorkOrder
from dispatcher.observability.metrics import MetricsCollector
from dispatcher.slack.blocks import completion_text, lookahead_blocks, message_mentions_activity

logger = structlog.get_logger()


class Outcome(str, Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    DONE = "done"
    FILTERED = "filtered"
    INACTIVE_PARENT = "inactive_parent"
    NOT_DUE = "not_due"
    UNCHANGED = "unchanged"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"
    RETRACTED = "retracted"


_VERDICT_OUTCOMES: dict[Verdict, Outcome] = {
    Verdict.TYPE_FILTERED: Outcome.FILTERED,
    Verdict.BLOCKED_SUBJECT: Outcome.FILTERED,
    Verdict.INACTIVE_PARENT: Outcome.INACTIVE_PARENT,
    Verdict.NOT_DUE: Outcome.NOT_DUE,
}


@dataclass(frozen=True)
class ActivityReport:
    activity_id: str
    outcome: Outcome
    resolution: Resolution = UNRESOLVED
    subject: str = ""
    retracted: bool = False


class ReconciliationEngine:
    def __init__(
        self,
        settings: Settings,
        records: Any,
        messenger: Any,
        clock: Clock | None = None,
        renderer: Renderer | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.metrics = metrics or MetricsCollector()
        self.records = records
        self.messenger = messenger
        self.renderer = renderer
        self.reference_tz = load_zone(settings.reference_tz)
        self.source_tz = (
            self.reference_tz if settings.due_time_source == "reference"
            else load_zone(settings.external_tz)
        )
        self.default_channel = settings.default_channel_id
        self._deal_channels: ExpiringStore[str] = ExpiringStore(
            self.clock, "deal_channels", settings.store_max_entries
        )

        self.directory = TeamDirectory(
            names=dict(settings.team_names),
            channels=dict(settings.team_channels),
            member_emails=dict(settings.team_member_emails),
        )
        self.resolver = AssignmentResolver(
            self.directory,
            activity_field=settings.activity_team_field,
            deal_field=settings.deal_team_field,
        )
        self.dedup = EventDedupFilter(
            self.clock,
            bucket_s=settings.dedup_bucket_s,
            ttl_s=settings.dedup_ttl_s,
            enabled=settings.dedup_enabled,
            max_entries=settings.store_max_entries,
        )
        self.stabilizer = LabelStabilizer(
            self.clock,
            records,
            mode=settings.rename_mode,
            window_s=settings.stabilizer_window_s,
            max_attempts=settings.stabilizer_max_attempts,
            cooldown_s=settings.stabilizer_cooldown_s,
            max_entries=settings.store_max_entries,
            metrics=self.metrics,
        )
        self.gating = GatingPolicy(
            allowed_types=settings.allowed_types,
            blocked_types=settings.blocked_types,
            blocked_subjects=settings.blocked_subjects,
        )
        self.fingerprints = PublishFingerprintGate(
            self.clock, ttl_s=settings.fingerprint_ttl_s, max_entries=settings.store_max_entries
        )
        self.tracker = PostLifecycleTracker(
            self.clock,
            messenger,
            message_mentions_activity,
            history_lookback=settings.history_lookback,
            max_entries=settings.store_max_entries,
        )
        self.signer = LinkSigner(
            settings.link_secret, settings.base_url, self.clock, ttl_s=settings.link_ttl_s
        )
        self.publisher = Publisher(
            records,
            messenger,
            self.directory,
            self.signer,
            self.clock,
            self.reference_tz,
            service_field=settings.deal_service_field,
            service_names=settings.service_names,
            renderer=renderer,
        )

    # ------------------------------------------------------------------
    # Dates
    # ------------------------------------------------------------------

    def today(self) -> date:
        return self.clock.now().astimezone(self.reference_tz).date()

    def normalize(self, activity: Mapping[str, Any]) -> DueInfo | None:
        return normalize_due(
            activity.get("due_date"), activity.get("due_time"), self.reference_tz, self.source_tz
        )

    def _all_channels(self) -> list[str]:
        deal_channels = [channel for _, channel in self._deal_channels.items()]
        return [self.default_channel, *self.directory.channels.values(), *deal_channels]

    async def channel_for(self, resolution: Resolution, deal_id: Any = None) -> str:
        """Crew channel, else the deal's own channel, else the default.

        A deal channel is one named ``deal<id>`` or ``deal-<id>``. Hits are
        cached per deal; misses are looked up again next time.
        """
        if resolution.channel_id:
            return resolution.channel_id
        if deal_id and self.settings.deal_channel_lookup:
            key = str(deal_id)
            cached = self._deal_channels.get(key)
            if cached:
                return cached
            found = await ignore_outcome(
                "find_deal_channel",
                self.messenger.find_channel_id(f"deal{key}", f"deal-{key}"),
                deal_id=key,
            )
            if found:
                self._deal_channels.put(key, found)
                return found
        return self.default_channel

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    async def handle_notification(self, notification: Notification) -> list[ActivityReport]:
        meta = notification.meta
        snapshot = notification.snapshot

        if meta.entity == "activity" and snapshot.get("id") is not None:
            # Check-and-insert before the first await.
            if self.dedup.already_handled(meta, snapshot):
                self.metrics.inc("dedup_dropped_total")
                return [ActivityReport(str(snapshot["id"]), Outcome.DUPLICATE)]

        self.metrics.inc_labeled("notifications_total", meta.entity or "unknown")
        try:
            with self.metrics.timer("notification_latency_ms"):
                return await self._dispatch(notification)
        except Exception:
            self.metrics.inc("pipeline_errors_total")
            raise

    async def _dispatch(self, notification: Notification) -> list[ActivityReport]:
        meta = notification.meta
        entity_id = notification.entity_id
        if entity_id is None:
            logger.info("notification_without_id", entity=meta.entity, action=meta.action.value)
            return []

        if meta.entity == "activity":
            if meta.action is Action.DELETE:
                return [await self.retract_activity(entity_id, scan_history=True)]
            return [await self.reconcile_activity(entity_id)]

        if meta.entity == "deal":
            if meta.action is Action.DELETE:
                return [
                    await self.retract_activity(aid)
                    for aid in self.tracker.activities_for_deal(entity_id)
                ]
            return await self.reconcile_deal(entity_id)

        logger.info("notification_ignored", entity=meta.entity, action=meta.action.value)
        return []

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def retract_activity(self, activity_id: Any, scan_history: bool = False) -> ActivityReport:
        self.fingerprints.forget(activity_id)
        if scan_history:
            retracted = await self.tracker.retract_everywhere(activity_id, self._all_channels())
        else:
            retracted = await self.tracker.retract(activity_id)
        if retracted:
            self.metrics.inc("retractions_total")
        self.metrics.inc_labeled("outcomes_total", Outcome.RETRACTED.value)
        return ActivityReport(str(activity_id), Outcome.RETRACTED, retracted=retracted)

    async def reconcile_activity(self, activity_id: Any, target_date: date | None = None) -> ActivityReport:
        activity = await self.records.get_activity(activity_id)
        if activity is None:
            logger.info("activity_not_found", activity_id=activity_id)
            report = await self.retract_activity(activity_id)
            return ActivityReport(str(activity_id), Outcome.NOT_FOUND, retracted=report.retracted)
        return await self.reconcile(activity, target_date)

    async def reconcile(self, activity: Mapping[str, Any], target_date: date | None = None) -> ActivityReport:
        """Run the pipeline for an already-fetched activity."""
        with self.metrics.timer("activity_latency_ms"):
            report = await self._reconcile(activity, target_date or self.today())
        self.metrics.inc_labeled("outcomes_total", report.outcome.value)
        logger.info(
            "activity_reconciled",
            activity_id=report.activity_id,
            outcome=report.outcome.value,
            team=report.resolution.team_name,
            source=report.resolution.source.value,
            retracted=report.retracted,
        )
        return report

    async def _retract_quietly(self, activity_id: str) -> bool:
        self.fingerprints.forget(activity_id)
        retracted = await self.tracker.retract(activity_id)
        if retracted:
            self.metrics.inc("retractions_total")
        return retracted

    async def _reconcile(self, activity: Mapping[str, Any], target_date: date) -> ActivityReport:
        activity_id = str(activity.get("id"))

        if activity.get("done"):
            retracted = await self._retract_quietly(activity_id)
            return ActivityReport(activity_id, Outcome.DONE, retracted=retracted)

        screened = self.gating.screen(activity)
        if not screened.allowed:
            return ActivityReport(activity_id, _VERDICT_OUTCOMES[screened.verdict])

        deal_id = activity.get("deal_id")
        deal = await self.records.get_deal(deal_id) if deal_id else None
        due = self.normalize(activity)
        resolution = self.resolver.resolve(activity, deal, allow_deal_fallback=True)

        original = str(activity.get("subject") or "")
        subject = await self.stabilizer.stabilize(activity_id, original, resolution.team_name)
        if subject != original:
            self.metrics.inc("renames_total")
        current = {**activity, "subject": subject}

        verdict = self.gating.evaluate(current, deal, due, target_date)
        if not verdict.allowed:
            retracted = await self._retract_quietly(activity_id) if verdict.retract else False
            return ActivityReport(
                activity_id,
                _VERDICT_OUTCOMES[verdict.verdict],
                resolution=resolution,
                subject=subject,
                retracted=retracted,
            )

        channel_id = await self.channel_for(resolution, deal_id)
        previous = self.tracker.get(activity_id)
        if previous is not None and previous.channel_id != channel_id:
            logger.info(
                "activity_reassigned",
                activity_id=activity_id,
                old_channel=previous.channel_id,
                new_channel=channel_id,
            )
            await self._retract_quietly(activity_id)

        if not self.fingerprints.should_publish(current, resolution.team_name, deal, due):
            return ActivityReport(activity_id, Outcome.UNCHANGED, resolution=resolution, subject=subject)

        post = await self.publisher.publish(current, deal, due, resolution, channel_id)
        if post is None:
            self.fingerprints.forget(activity_id)
            return ActivityReport(activity_id, Outcome.PUBLISH_FAILED, resolution=resolution, subject=subject)

        # Supersede: the previous card for this activity goes away.
        await self.tracker.retract(activity_id)
        self.tracker.record(activity_id, post)
        self.metrics.inc("publishes_total")
        return ActivityReport(activity_id, Outcome.PUBLISHED, resolution=resolution, subject=subject)

    async def reconcile_deal(self, deal_id: Any, target_date: date | None = None) -> list[ActivityReport]:
        """Fan-out: every open child activity, sequentially."""
        activities = await self.records.list_open_activities(deal_id)
        open_ids = {str(a.get("id")) for a in activities}
        reports = [await self.reconcile(activity, target_date) for activity in activities]
        for stale in self.tracker.activities_for_deal(deal_id):
            if stale not in open_ids:
                reports.append(await self.retract_activity(stale))
        return reports

    # ------------------------------------------------------------------
    # Scheduled runners
    # ------------------------------------------------------------------

    async def run_daily(self, target_date: date | None = None) -> list[ActivityReport]:
        """Reconcile every open activity for ``target_date`` (today)."""
        target = target_date or self.today()
        activities = await self.records.list_open_activities()
        logger.info("daily_run_started", target_date=target.isoformat(), activities=len(activities))

        reports: list[ActivityReport] = []
        for activity in activities:
            try:
                reports.append(await self.reconcile(activity, target))
            except Exception:
                logger.exception("daily_run_activity_failed", activity_id=activity.get("id"))

        # Only reached with a complete listing; a failed one raised above.
        open_ids = {str(a.get("id")) for a in activities}
        for activity_id in self.tracker.tracked_activities():
            if activity_id not in open_ids:
                reports.append(await self.retract_activity(activity_id))
        return reports

    async def run_lookahead(self, target_date: date | None = None) -> dict[str, list[str]]:
        """Post one preview per channel of what is due on ``target_date``.

        Read-only with respect to the record system: no renames, and the
        previews are not tracked for retraction.
        """
        target = target_date or (self.today() + timedelta(days=1))
        namespace = f"preview:{target.isoformat()}:"
        activities = await self.records.list_open_activities()
        deals: dict[str, Mapping[str, Any] | None] = {}
        by_channel: dict[str, list[tuple[datetime, WorkOrder]]] = defaultdict(list)

        for activity in activities:
            if activity.get("done") or not self.gating.screen(activity).allowed:
                continue
            deal_id = activity.get("deal_id")
            if deal_id and str(deal_id) not in deals:
                deals[str(deal_id)] = await ignore_outcome(
                    "lookahead_fetch_deal", self.records.get_deal(deal_id), deal_id=deal_id
                )
            deal = deals.get(str(deal_id)) if deal_id else None
            due = self.normalize(activity)
            if not self.gating.evaluate(activity, deal, due, target).allowed:
                continue
            resolution = self.resolver.resolve(activity, deal)
            if not self.fingerprints.should_publish(
                activity, resolution.team_name, deal, due, namespace=namespace
            ):
                continue
            channel_id = await self.channel_for(resolution, deal_id)
            order = self.publisher.build_order(activity, deal, due, resolution, channel_id)
            by_channel[channel_id].append((due.instant, order))

        label = f"{target:%a %b} {target.day}"
        posted: dict[str, list[str]] = {}
        for channel_id, entries in by_channel.items():
            orders = [order for _, order in sorted(entries, key=lambda e: e[0])]
            ts = await ignore_outcome(
                "post_lookahead",
                self.messenger.post_message(
                    channel_id,
                    f"Tomorrow's work orders ({label})",
                    blocks=lookahead_blocks(label, orders),
                ),
                channel=channel_id,
            )
            if ts is None:
                # Let the next fire try this channel again.
                for order in orders:
                    self.fingerprints.forget(order.activity_id, namespace=namespace)
                continue
            posted[channel_id] = [o.activity_id for o in orders]
        logger.info("lookahead_run_complete", target_date=target.isoformat(), channels=len(posted))
        return posted

    async def work_order(self, activity_id: Any) -> WorkOrder | None:
        """Build the work order for an activity as it would be published now."""
        activity = await self.records.get_activity(activity_id)
        if activity is None:
            return None
        deal_id = activity.get("deal_id")
        deal = await self.records.get_deal(deal_id) if deal_id else None
        resolution = self.resolver.resolve(activity, deal)
        channel_id = await self.channel_for(resolution, deal_id)
        return self.publisher.build_order(activity, deal, self.normalize(activity), resolution, channel_id)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_activity(
        self,
        activity_id: Any,
        deal_id: str = "",
        announce_channel: str | None = None,
    ) -> bool:
        """Mark done upstream, retract the post, and announce the result."""
        done_at = self.clock.now().isoformat()
        try:
            await self.records.mark_done(activity_id, done_at)
            ok = True
        except RecordSystemError as e:
            logger.error("activity_complete_failed", activity_id=activity_id, error=str(e))
            ok = False

        if ok:
            await self.retract_activity(activity_id, scan_history=True)

        channel = announce_channel or self.default_channel
        if channel:
            await ignore_outcome(
                "announce_completion",
                self.messenger.post_message(channel, completion_text(str(activity_id), deal_id, ok)),
                activity_id=activity_id,
            )
        return ok
