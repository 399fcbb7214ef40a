"""Fan-out publish of a work order.

One publish posts the task card to the crew channel (or the default dispatch
channel), uploads the rendered document next to it, and mirrors the
document and the signed completion link onto the deal. Only the task card is
critical; everything else is best effort.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol
from zoneinfo import ZoneInfo

import structlog

from dispatcher.core.assignment import Resolution, TeamDirectory
from dispatcher.core.clock import Clock
from dispatcher.core.due import DueInfo
from dispatcher.core.effects import ignore_outcome
from dispatcher.core.fields import decode_id, parse_raw
from dispatcher.core.fingerprint import note_plain_text
from dispatcher.core.lifecycle import TrackedPost
from dispatcher.core.signing import LinkSigner
from dispatcher.documents.work_order import WorkOrder
from dispatcher.slack.blocks import (
    activity_marker,
    task_card_blocks,
    task_card_metadata,
    task_card_text,
)

logger = structlog.get_logger()


class Renderer(Protocol):
    async def render(self, order: WorkOrder) -> bytes: ...


def describe_service(deal: Mapping[str, Any] | None, field_key: str, names: Mapping[int, str]) -> str:
    if not deal:
        return ""
    raw = deal.get(field_key)
    index = {name.casefold(): key for key, name in names.items()}
    service_id = decode_id(parse_raw(raw), index)
    if service_id is not None and service_id in names:
        return names[service_id]
    return "" if raw in (None, "") else str(raw)


def deal_location(deal: Mapping[str, Any] | None) -> str:
    if not deal:
        return ""
    for key in ("location", "address", "location_formatted_address"):
        value = deal.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, Mapping) and value.get("value"):
            return str(value["value"])
    return ""


class Publisher:
    def __init__(
        self,
        records: Any,
        messenger: Any,
        directory: TeamDirectory,
        signer: LinkSigner,
        clock: Clock,
        reference_tz: ZoneInfo,
        service_field: str,
        service_names: Mapping[int, str],
        renderer: Renderer | None = None,
    ) -> None:
        self._records = records
        self._messenger = messenger
        self._directory = directory
        self._signer = signer
        self._clock = clock
        self._reference_tz = reference_tz
        self._service_field = service_field
        self._service_names = dict(service_names)
        self._renderer = renderer
        self._member_ids: dict[str, str] = {}

    def build_order(
        self,
        activity: Mapping[str, Any],
        deal: Mapping[str, Any] | None,
        due: DueInfo | None,
        resolution: Resolution,
        channel_id: str,
    ) -> WorkOrder:
        activity_id = str(activity.get("id"))
        deal_id = str(activity.get("deal_id") or (deal or {}).get("id") or "")
        due_text = f"{due.display_date} {due.display_time}" if due else ""
        return WorkOrder(
            activity_id=activity_id,
            subject=str(activity.get("subject") or ""),
            due=due_text,
            deal_id=deal_id,
            deal_title=str((deal or {}).get("title") or ""),
            service=describe_service(deal, self._service_field, self._service_names),
            location=deal_location(deal),
            crew=resolution.team_name or "",
            note=note_plain_text(activity.get("note")),
            complete_url=self._signer.completion_url(activity_id, deal_id, channel_id),
            generated=self._clock.now().astimezone(self._reference_tz).strftime("%Y-%m-%d %H:%M %Z"),
        )

    async def _member_id(self, email: str) -> str | None:
        if email not in self._member_ids:
            user_id = await ignore_outcome(
                "lookup_member", self._messenger.lookup_user_id(email), email=email
            )
            if not user_id:
                return None
            self._member_ids[email] = user_id
        return self._member_ids[email]

    async def _prepare_channel(self, channel_id: str, resolution: Resolution) -> None:
        await ignore_outcome("join_channel", self._messenger.join(channel_id), channel=channel_id)
        if resolution.team_id is None:
            return
        emails = self._directory.member_emails.get(resolution.team_id) or []
        user_ids = [uid for uid in [await self._member_id(e) for e in emails] if uid]
        if user_ids:
            await ignore_outcome(
                "invite_members",
                self._messenger.invite(channel_id, user_ids),
                channel=channel_id,
                members=len(user_ids),
            )

    async def publish(
        self,
        activity: Mapping[str, Any],
        deal: Mapping[str, Any] | None,
        due: DueInfo | None,
        resolution: Resolution,
        channel_id: str,
    ) -> TrackedPost | None:
        """Publish a work order. Returns None when the task card failed."""
        order = self.build_order(activity, deal, due, resolution, channel_id)
        await self._prepare_channel(channel_id, resolution)

        try:
            ts = await self._messenger.post_message(
                channel_id,
                task_card_text(order),
                blocks=task_card_blocks(order),
                metadata=task_card_metadata(order),
            )
        except Exception as e:
            logger.error(
                "task_card_post_failed",
                activity_id=order.activity_id,
                channel=channel_id,
                error=str(e),
            )
            return None
        logger.info("task_card_posted", activity_id=order.activity_id, channel=channel_id, ts=ts)

        pdf = await self._render(order)
        file_ids: list[str] = []
        if pdf is not None:
            file_ids = await ignore_outcome(
                "upload_work_order",
                self._messenger.upload_file(
                    channel_id,
                    pdf,
                    order.filename,
                    title=f"Work Order — {order.subject}",
                    initial_comment=f"📄 Work Order PDF (open the link to complete) {activity_marker(order.activity_id)}",
                ),
                activity_id=order.activity_id,
            ) or []
            if order.deal_id:
                await ignore_outcome(
                    "upload_deal_file",
                    self._records.upload_file(order.deal_id, order.filename, pdf),
                    activity_id=order.activity_id,
                    deal_id=order.deal_id,
                )
        if order.deal_id:
            await ignore_outcome(
                "create_deal_note",
                self._records.create_note(
                    order.deal_id,
                    f"Work Order PDF attached.\nMark complete: {order.complete_url}",
                ),
                activity_id=order.activity_id,
                deal_id=order.deal_id,
            )

        return TrackedPost(
            channel_id=channel_id,
            message_ts=ts,
            file_ids=tuple(file_ids),
            deal_id=order.deal_id,
        )

    async def _render(self, order: WorkOrder) -> bytes | None:
        if self._renderer is None:
            return None
        try:
            return await self._renderer.render(order)
        except RuntimeError as e:
            logger.warning("work_order_render_failed", activity_id=order.activity_id, error=str(e))
            return None
