"""Publish gating by content fingerprint.

A publish is skipped when the (subject, due date, due time, crew, deal,
note) tuple for an activity is identical to the one last published and the
stored fingerprint has not expired. This absorbs redeliveries that slipped
past the dedup bucket and fan-out passes triggered by unrelated deal edits.
"""

from __future__ import annotations

import hashlib
import html
import re
from collections.abc import Mapping
from typing import Any

import structlog

from dispatcher.core.clock import Clock
from dispatcher.core.due import DueInfo
from dispatcher.core.store import ExpiringStore

logger = structlog.get_logger()

_BR_RE = re.compile(r"<br\s*/?>\s?", re.IGNORECASE)
_BLOCK_END_RE = re.compile(r"</(p|div|li)>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_NOTE_HASH_MOD = 2**32


def note_plain_text(note: Any) -> str:
    """Rich-text note to plain text."""
    if not isinstance(note, str) or not note:
        return ""
    text = _BR_RE.sub("\n", note)
    text = _BLOCK_END_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    return "\n".join(line.rstrip() for line in text.splitlines()).strip()


def note_hash(text: str) -> str:
    """Polynomial rolling hash, fixed at 8 hex chars."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) % _NOTE_HASH_MOD
    return f"{h:08x}"


def compute_fingerprint(
    subject: str,
    due_date: str,
    due_time: str,
    team_name: str | None,
    deal_id: Any,
    note: Any,
) -> str:
    composite = "|".join([
        subject or "",
        due_date or "",
        due_time or "",
        team_name or "",
        "" if deal_id is None else str(deal_id),
        note_hash(note_plain_text(note)),
    ])
    return hashlib.sha256(composite.encode("utf-8")).hexdigest()


class PublishFingerprintGate:
    def __init__(self, clock: Clock, ttl_s: float = 12 * 60 * 60, max_entries: int = 5000) -> None:
        self.ttl_s = ttl_s
        self._fingerprints: ExpiringStore[str] = ExpiringStore(clock, "fingerprint", max_entries)

    def fingerprint_for(
        self,
        activity: Mapping[str, Any],
        team_name: str | None,
        deal: Mapping[str, Any] | None,
        due: DueInfo | None = None,
    ) -> str:
        deal_id = (deal or {}).get("id", activity.get("deal_id"))
        return compute_fingerprint(
            subject=str(activity.get("subject") or ""),
            due_date=str(activity.get("due_date") or ""),
            due_time=due.normalized_time if due else str(activity.get("due_time") or ""),
            team_name=team_name,
            deal_id=deal_id,
            note=activity.get("note"),
        )

    def should_publish(
        self,
        activity: Mapping[str, Any],
        team_name: str | None,
        deal: Mapping[str, Any] | None,
        due: DueInfo | None = None,
        namespace: str = "",
    ) -> bool:
        """True, and the stored fingerprint updated, when anything changed."""
        key = f"{namespace}{activity.get('id')}"
        fingerprint = self.fingerprint_for(activity, team_name, deal, due)
        if self._fingerprints.get(key) == fingerprint:
            logger.info("publish_unchanged_skip", activity_id=activity.get("id"), namespace=namespace)
            return False
        self._fingerprints.put(key, fingerprint, self.ttl_s)
        return True

    def forget(self, activity_id: Any, namespace: str = "") -> None:
        self._fingerprints.pop(f"{namespace}{activity_id}")
