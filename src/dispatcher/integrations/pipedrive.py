"""Pipedrive REST client (v1).

Every response is treated as ``{"success": bool, "data": ...}``. Single-record
reads return ``None`` when the record is missing or ``success`` is false;
listings and mutations raise ``RecordSystemError``.

Transient failures (network errors, 429, 5xx) raise ``TransientRecordError``.
Mutations retry those a fixed number of times with a fixed wait; reads do
not retry, the webhook will come again.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from dispatcher.core.errors import RecordSystemError, TransientRecordError

logger = structlog.get_logger()

_PAGE_LIMIT = 500
_MAX_PAGES = 20


class PipedriveClient:
    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.pipedrive.com/v1",
        timeout_s: float = 30.0,
        mutation_attempts: int = 3,
        mutation_backoff_s: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.mutation_attempts = max(1, mutation_attempts)
        self.mutation_backoff_s = mutation_backoff_s
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={"x-api-token": api_token, "Accept": "application/json"},
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, path.lstrip("/"), **kwargs)
        except httpx.TransportError as e:
            raise TransientRecordError(f"{method} {path}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRecordError(
                f"{method} {path}: HTTP {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code == 404:
            return {"success": False, "data": None}
        try:
            body = resp.json()
        except ValueError as e:
            raise RecordSystemError(
                f"{method} {path}: non-JSON response", status_code=resp.status_code
            ) from e
        if not isinstance(body, dict):
            body = {"success": False, "data": None}
        if resp.status_code >= 400:
            raise RecordSystemError(
                f"{method} {path}: HTTP {resp.status_code} {body.get('error', '')}".strip(),
                status_code=resp.status_code,
            )
        return body

    async def _read(self, path: str, **params: Any) -> Any:
        body = await self._request("GET", path, params=params or None)
        return body.get("data") if body.get("success") else None

    async def _mutate(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        body: dict[str, Any] = {}
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientRecordError),
            stop=stop_after_attempt(self.mutation_attempts),
            wait=wait_fixed(self.mutation_backoff_s),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "pipedrive_mutation_retry",
                        method=method,
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                body = await self._request(method, path, **kwargs)
        if not body.get("success"):
            raise RecordSystemError(f"{method} {path}: success=false")
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_activity(self, activity_id: Any) -> dict[str, Any] | None:
        return await self._read(f"activities/{activity_id}")

    async def get_deal(self, deal_id: Any) -> dict[str, Any] | None:
        return await self._read(f"deals/{deal_id}")

    async def list_open_activities(self, deal_id: Any = None) -> list[dict[str, Any]]:
        """Open activities for one deal, or for the whole account."""
        path = f"deals/{deal_id}/activities" if deal_id else "activities"
        params: dict[str, Any] = {"done": 0, "limit": _PAGE_LIMIT}
        if not deal_id:
            params["user_id"] = 0  # all users

        activities: list[dict[str, Any]] = []
        start = 0
        for _ in range(_MAX_PAGES):
            body = await self._request("GET", path, params={**params, "start": start})
            # Callers sweep anything missing from the listing, so never return a partial one.
            if not body.get("success"):
                raise RecordSystemError(f"GET {path}: success=false at start={start}")
            activities.extend(a for a in body.get("data") or [] if not a.get("done"))
            pagination = (body.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start", start + _PAGE_LIMIT)
        return activities

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_activity(self, activity_id: Any, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._mutate("PUT", f"activities/{activity_id}", json=fields)

    async def mark_done(self, activity_id: Any, done_at: str) -> dict[str, Any]:
        return await self.update_activity(
            activity_id, {"done": True, "marked_as_done_time": done_at}
        )

    async def create_note(self, deal_id: Any, content: str) -> dict[str, Any]:
        return await self._mutate("POST", "notes", json={"deal_id": deal_id, "content": content})

    async def upload_file(self, deal_id: Any, filename: str, content: bytes) -> dict[str, Any]:
        return await self._mutate(
            "POST",
            "files",
            data={"deal_id": str(deal_id)},
            files={"file": (filename, content, "application/pdf")},
        )
