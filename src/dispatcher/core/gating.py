"""Publish/no-publish policy.

Checks run in order and stop at the first failure:

  1. activity type allow-list (or block-list when no allow-list is set)
  2. blocked subjects, compared tag-stripped and normalized
  3. parent deal open and not flagged inactive
  4. due calendar date equals the run's target date
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from dispatcher.core.due import DueInfo
from dispatcher.core.labels import normalize_subject


class Verdict(str, Enum):
    PASS = "pass"
    TYPE_FILTERED = "type_filtered"
    BLOCKED_SUBJECT = "blocked_subject"
    INACTIVE_PARENT = "inactive_parent"
    NOT_DUE = "not_due"


# Failing these means a previously published post no longer qualifies.
_RETRACTING = frozenset({Verdict.INACTIVE_PARENT, Verdict.NOT_DUE})


@dataclass(frozen=True)
class GateResult:
    verdict: Verdict

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.PASS

    @property
    def retract(self) -> bool:
        return self.verdict in _RETRACTING


PASSED = GateResult(Verdict.PASS)


def deal_is_active(deal: Mapping[str, Any] | None) -> bool:
    if not deal:
        return True
    status = deal.get("status")
    if status is not None and str(status).lower() != "open":
        return False
    return deal.get("active") is not False and deal.get("active_flag") is not False


class GatingPolicy:
    def __init__(
        self,
        allowed_types: Iterable[str] = (),
        blocked_types: Iterable[str] = (),
        blocked_subjects: Iterable[str] = (),
    ) -> None:
        self.allowed_types = {t.strip().lower() for t in allowed_types if t.strip()}
        self.blocked_types = {t.strip().lower() for t in blocked_types if t.strip()}
        self.blocked_subjects = {normalize_subject(s) for s in blocked_subjects if s.strip()}

    def type_allowed(self, activity_type: Any) -> bool:
        kind = str(activity_type or "").strip().lower()
        if self.allowed_types:
            return kind in self.allowed_types
        if self.blocked_types:
            return kind not in self.blocked_types
        return True

    def subject_blocked(self, subject: Any) -> bool:
        return normalize_subject(str(subject or "")) in self.blocked_subjects

    def screen(self, activity: Mapping[str, Any]) -> GateResult:
        """Checks 1-2 only; cheap enough to run before resolution."""
        if not self.type_allowed(activity.get("type")):
            return GateResult(Verdict.TYPE_FILTERED)
        if self.subject_blocked(activity.get("subject")):
            return GateResult(Verdict.BLOCKED_SUBJECT)
        return PASSED

    def evaluate(
        self,
        activity: Mapping[str, Any],
        deal: Mapping[str, Any] | None,
        due: DueInfo | None,
        target_date: date,
    ) -> GateResult:
        screened = self.screen(activity)
        if not screened.allowed:
            return screened
        if not deal_is_active(deal):
            return GateResult(Verdict.INACTIVE_PARENT)
        if due is None or due.calendar_date != target_date:
            return GateResult(Verdict.NOT_DUE)
        return PASSED
