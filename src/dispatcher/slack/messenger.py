"""Thin async facade over the Slack Web API.

Only the calls the dispatcher needs: channel discovery and membership,
posting, file upload, deletion, and history reads for marker-based cleanup.
Errors propagate as ``slack_sdk.errors.SlackApiError``; callers decide which
ones are best effort.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk.web.async_client import AsyncWebClient

logger = structlog.get_logger()

_CHANNEL_TYPES = "public_channel,private_channel"


class SlackMessenger:
    def __init__(self, client: AsyncWebClient) -> None:
        self.client = client

    async def list_channels(self) -> list[dict[str, Any]]:
        """All visible channels, following pagination cursors."""
        channels: list[dict[str, Any]] = []
        seen: set[str] = set()
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {"types": _CHANNEL_TYPES, "limit": 1000}
            if cursor:
                kwargs["cursor"] = cursor
            resp = await self.client.conversations_list(**kwargs)
            for channel in resp.get("channels") or []:
                if channel.get("id") and channel["id"] not in seen:
                    seen.add(channel["id"])
                    channels.append(channel)
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return channels

    async def find_channel_id(self, *names: str) -> str | None:
        wanted = set(names)
        for channel in await self.list_channels():
            if channel.get("name") in wanted:
                return channel["id"]
        return None

    async def join(self, channel_id: str) -> None:
        await self.client.conversations_join(channel=channel_id)

    async def invite(self, channel_id: str, user_ids: list[str]) -> None:
        if user_ids:
            await self.client.conversations_invite(channel=channel_id, users=",".join(user_ids))

    async def lookup_user_id(self, email: str) -> str | None:
        resp = await self.client.users_lookupByEmail(email=email)
        return (resp.get("user") or {}).get("id")

    async def post_message(
        self,
        channel: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            kwargs["blocks"] = blocks
        if metadata:
            kwargs["metadata"] = metadata
        resp = await self.client.chat_postMessage(**kwargs)
        return resp.get("ts")

    async def upload_file(
        self,
        channel: str,
        content: bytes,
        filename: str,
        title: str | None = None,
        initial_comment: str = "",
    ) -> list[str]:
        """Upload and share a file. Returns the created file ids."""
        resp = await self.client.files_upload_v2(
            channel=channel,
            content=content,
            filename=filename,
            title=title or filename,
            initial_comment=initial_comment,
        )
        files = resp.get("files") or ([resp["file"]] if resp.get("file") else [])
        file_ids = [f["id"] for f in files if f.get("id")]
        logger.info("file_uploaded_to_slack", filename=filename, channel=channel, files=file_ids)
        return file_ids

    async def delete_message(self, channel: str, ts: str) -> None:
        await self.client.chat_delete(channel=channel, ts=ts)

    async def delete_file(self, file_id: str) -> None:
        await self.client.files_delete(file=file_id)

    async def history(self, channel: str, limit: int = 200) -> list[dict[str, Any]]:
        resp = await self.client.conversations_history(
            channel=channel, limit=limit, include_all_metadata=True
        )
        return list(resp.get("messages") or [])
