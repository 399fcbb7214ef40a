"""Due date/time normalization.

Pipedrive hands back ``due_date`` as an ISO date and ``due_time`` as any of
``"HH:MM"``, ``"HH:MM:SS"``, a bare number, or a ``{"value": ...}`` wrapper.
Everything is folded into a single aware instant in the reference zone.

Untimed activities get 23:59:00 reference-zone so they sort after timed
activities on the same day. Malformed input yields ``None``, never an
exception; callers treat that as "undated".
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()

# Numeric time-of-day values below this are minutes, not seconds.
MINUTES_THRESHOLD = 24 * 60
_SECONDS_PER_DAY = 24 * 60 * 60
_END_OF_DAY = time(23, 59, 0)

_CLOCK_RE = re.compile(
    r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$"
)


@dataclass(frozen=True)
class DueInfo:
    """A due moment expressed in the reference zone."""

    instant: datetime
    calendar_date: date
    display_date: str
    display_time: str
    timed: bool

    @property
    def normalized_time(self) -> str:
        """``HH:MM`` in the reference zone, empty when untimed."""
        return self.instant.strftime("%H:%M") if self.timed else ""


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_time_zone", zone=name, fallback="UTC")
        return ZoneInfo("UTC")


def _parse_date(raw: Any) -> date | None:
    if not isinstance(raw, str) or len(raw.strip()) < 10:
        return None
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def _seconds_from_number(value: float) -> int | None:
    if value < 0:
        return None
    seconds = int(value * 60) if value < MINUTES_THRESHOLD else int(value)
    return seconds if seconds < _SECONDS_PER_DAY else None


def time_of_day_seconds(raw: Any) -> int | None:
    """Seconds since midnight for a raw due-time, or None when malformed."""
    if isinstance(raw, dict):
        return time_of_day_seconds(raw.get("value"))
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return _seconds_from_number(float(raw))
    if not isinstance(raw, str):
        return None

    text = raw.strip()
    try:
        return _seconds_from_number(float(text))
    except ValueError:
        pass

    match = _CLOCK_RE.match(text)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()
    if meridiem:
        if not 1 <= hours <= 12:
            return None
        hours = hours % 12 + (12 if meridiem == "pm" else 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return hours * 3600 + minutes * 60 + seconds


def _is_blank(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, str):
        return not raw.strip()
    if isinstance(raw, dict):
        return _is_blank(raw.get("value"))
    return False


def _display_date(d: date) -> str:
    return f"{d:%a %b} {d.day}, {d.year}"


def _display_time(t: time) -> str:
    hour12 = t.hour % 12 or 12
    return f"{hour12}:{t.minute:02d} {'AM' if t.hour < 12 else 'PM'}"


def normalize_due(
    due_date: Any,
    due_time: Any,
    reference_tz: ZoneInfo,
    source_tz: ZoneInfo,
) -> DueInfo | None:
    """Fold a raw due date/time into the reference zone.

    Args:
        due_date: ``YYYY-MM-DD`` (longer ISO strings are truncated).
        due_time: See module docstring. Interpreted in ``source_tz``.
        reference_tz: Zone that calendar dates and display values use.
        source_tz: Zone the record system expresses due times in.
    """
    day = _parse_date(due_date)
    if day is None:
        return None

    if _is_blank(due_time):
        instant = datetime.combine(day, _END_OF_DAY, tzinfo=reference_tz)
        return DueInfo(
            instant=instant,
            calendar_date=instant.date(),
            display_date=_display_date(instant.date()),
            display_time="Anytime",
            timed=False,
        )

    seconds = time_of_day_seconds(due_time)
    if seconds is None:
        logger.debug("due_time_unparsable", due_date=due_date, due_time=due_time)
        return None

    source = datetime.combine(day, time(0), tzinfo=source_tz) + timedelta(seconds=seconds)
    instant = source.astimezone(reference_tz)
    return DueInfo(
        instant=instant,
        calendar_date=instant.date(),
        display_date=_display_date(instant.date()),
        display_time=_display_time(instant.timetz()),
        timed=True,
    )
