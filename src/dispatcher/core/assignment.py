"""Assignment resolution: which crew owns an activity.

Precedence, first match wins:

  1. activity-level team field
  2. deal-level team field mirrored onto the activity payload
  3. any 40-hex custom field on the activity that decodes to a known team
  4. the deal's own team fields (only when deal fallback is allowed)
  5. the activity owner's display name, if it is exactly a team name
  6. unresolved

Resolution is recomputed on every run; upstream data changes between runs.
A team without a configured channel still resolves (unrouted slots).
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from dispatcher.core.fields import decode_id, parse_raw

logger = structlog.get_logger()

# Pipedrive custom field keys are 40-char hex hashes.
CUSTOM_FIELD_KEY_RE = re.compile(r"^[0-9a-f]{40}$")


class AssignmentSource(str, Enum):
    ACTIVITY = "activity"
    DEAL = "deal"
    OWNER = "owner"
    NONE = "none"


@dataclass(frozen=True)
class Resolution:
    team_id: int | None
    team_name: str | None
    channel_id: str | None
    source: AssignmentSource

    @property
    def resolved(self) -> bool:
        return self.team_name is not None


UNRESOLVED = Resolution(team_id=None, team_name=None, channel_id=None, source=AssignmentSource.NONE)


@dataclass
class TeamDirectory:
    """Static team tables: id -> name, id -> channel, id -> member e-mails."""

    names: dict[int, str]
    channels: dict[int, str] = field(default_factory=dict)
    member_emails: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._by_name = {name.casefold(): team_id for team_id, name in self.names.items()}

    @property
    def name_index(self) -> Mapping[str, int]:
        return self._by_name

    def is_known(self, team_id: int | None) -> bool:
        return team_id is not None and team_id in self.names

    def resolution(self, team_id: int, source: AssignmentSource) -> Resolution:
        return Resolution(
            team_id=team_id,
            team_name=self.names[team_id],
            channel_id=self.channels.get(team_id) or None,
            source=source,
        )

    def decode(self, raw: Any) -> int | None:
        """Decode a raw field value to a known team id, else None."""
        team_id = decode_id(parse_raw(raw), self._by_name)
        return team_id if self.is_known(team_id) else None


def _owner_name(activity: Mapping[str, Any]) -> str | None:
    for key in ("owner_name", "assigned_to_user_name"):
        value = activity.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    user = activity.get("user_id")
    if isinstance(user, Mapping) and isinstance(user.get("name"), str):
        return user["name"].strip() or None
    return None


class AssignmentResolver:
    """Pure function of (activity, deal, team tables)."""

    def __init__(
        self,
        directory: TeamDirectory,
        activity_field: str,
        deal_field: str,
    ) -> None:
        self.directory = directory
        self.activity_field = activity_field
        self.deal_field = deal_field

    def _probe(self, record: Mapping[str, Any], keys: Iterable[str]) -> int | None:
        for key in keys:
            if key in record:
                team_id = self.directory.decode(record.get(key))
                if team_id is not None:
                    return team_id
        return None

    def _scan_custom_fields(self, record: Mapping[str, Any]) -> int | None:
        skip = {self.activity_field, self.deal_field}
        keys = [k for k in record if k not in skip and CUSTOM_FIELD_KEY_RE.match(k)]
        return self._probe(record, keys)

    def resolve(
        self,
        activity: Mapping[str, Any],
        deal: Mapping[str, Any] | None,
        allow_deal_fallback: bool = True,
    ) -> Resolution:
        team_id = self._probe(activity, [self.activity_field])
        if team_id is not None:
            return self.directory.resolution(team_id, AssignmentSource.ACTIVITY)

        team_id = self._probe(activity, [self.deal_field])
        if team_id is not None:
            return self.directory.resolution(team_id, AssignmentSource.DEAL)

        team_id = self._scan_custom_fields(activity)
        if team_id is not None:
            return self.directory.resolution(team_id, AssignmentSource.ACTIVITY)

        if allow_deal_fallback and deal:
            team_id = self._probe(deal, [self.deal_field, self.activity_field])
            if team_id is None:
                team_id = self._scan_custom_fields(deal)
            if team_id is not None:
                return self.directory.resolution(team_id, AssignmentSource.DEAL)

        owner = _owner_name(activity)
        if owner:
            team_id = self.directory.name_index.get(owner.casefold())
            if team_id is not None:
                return self.directory.resolution(team_id, AssignmentSource.OWNER)

        logger.debug("assignment_unresolved", activity_id=activity.get("id"))
        return UNRESOLVED
