"""Tests for due date/time normalization."""

from __future__ import annotations

from datetime import date
from zoneinfo import ZoneInfo

import pytest

from dispatcher.core.due import load_zone, normalize_due, time_of_day_seconds

LA = ZoneInfo("America/Los_Angeles")
UTC = ZoneInfo("UTC")


class TestTimeOfDay:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("14:30", 14 * 3600 + 30 * 60),
            ("07:05:09", 7 * 3600 + 5 * 60 + 9),
            ("3:30 PM", 15 * 3600 + 30 * 60),
            ("12:00 am", 0),
            (90, 90 * 60),
            ("5400", 5400),
            ({"value": "10:00"}, 10 * 3600),
        ],
    )
    def test_accepted_shapes(self, raw, expected):
        assert time_of_day_seconds(raw) == expected

    @pytest.mark.parametrize("raw", ["25:00", "10:75", "13:00 PM", "noon", True, -5, 90000])
    def test_malformed(self, raw):
        assert time_of_day_seconds(raw) is None


class TestNormalizeDue:
    def test_untimed_is_end_of_day_anytime(self):
        due = normalize_due("2026-10-17", "", LA, UTC)
        assert due.timed is False
        assert due.display_time == "Anytime"
        assert due.normalized_time == ""
        assert (due.instant.hour, due.instant.minute) == (23, 59)
        assert due.calendar_date == date(2026, 10, 17)
        assert due.display_date == "Sat Oct 17, 2026"

    def test_external_time_converted_to_reference_zone(self):
        due = normalize_due("2026-10-17", "14:30", LA, UTC)
        assert due.timed is True
        assert due.normalized_time == "07:30"
        assert due.display_time == "7:30 AM"
        assert due.calendar_date == date(2026, 10, 17)

    def test_conversion_can_move_calendar_date(self):
        due = normalize_due("2026-10-17", "02:00", LA, UTC)
        assert due.calendar_date == date(2026, 10, 16)
        assert due.display_time == "7:00 PM"

    def test_reference_source_keeps_wall_time(self):
        due = normalize_due("2026-10-17", "3:30 PM", LA, LA)
        assert due.normalized_time == "15:30"
        assert due.display_time == "3:30 PM"

    def test_long_iso_date_is_truncated(self):
        due = normalize_due("2026-10-17T00:00:00Z", None, LA, UTC)
        assert due.calendar_date == date(2026, 10, 17)

    @pytest.mark.parametrize("due_date", [None, "", "17/10/2026", "2026-13-40", 20261017])
    def test_bad_date_is_undated(self, due_date):
        assert normalize_due(due_date, "10:00", LA, UTC) is None

    def test_bad_time_is_undated(self):
        assert normalize_due("2026-10-17", "half past", LA, UTC) is None


def test_unknown_zone_falls_back_to_utc():
    assert load_zone("Mars/Olympus_Mons") == UTC
