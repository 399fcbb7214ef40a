"""Rename-and-defend for activity subjects.

When an activity resolves to a crew, its subject is rewritten to carry a
crew tag. Some external automations rewrite the subject right back, so for a
short window after our own write every pipeline run compares what it sees
with what we wrote and re-issues the write, up to ``max_attempts`` times.

Per-activity state machine::

    Unarmed ──rename──► Armed ──window over, label matches──► Resolved
                          │
                          ├──window over, label differs──► Expired
                          └──attempts exhausted──────────► Expired

Resolved drops the record. Expired is kept for ``cooldown_s`` so that the
same desired subject is not fought over again; a different desired subject
(e.g. the crew changed) re-arms immediately.

Transitions are pure functions; ``LabelStabilizer`` owns the state store and
performs the writes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Protocol

import structlog

from dispatcher.core.clock import Clock
from dispatcher.core.errors import RecordSystemError
from dispatcher.core.labels import embed_crew_tag, has_crew_tag, normalize_crew
from dispatcher.core.store import ExpiringStore
from dispatcher.observability.metrics import MetricsCollector

logger = structlog.get_logger()


# ─────────────────────────────────────────────────────────────────────────────
# States and transitions
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Unarmed:
    pass


@dataclass(frozen=True)
class Armed:
    desired_crew: str
    desired_subject: str
    expires_at: float
    attempts: int = 0


@dataclass(frozen=True)
class Resolved:
    desired_subject: str


@dataclass(frozen=True)
class Expired:
    desired_subject: str
    until: float


StabilizerState = Unarmed | Armed | Resolved | Expired

UNARMED = Unarmed()


class Correction(Enum):
    NONE = "none"
    REWRITE = "rewrite"


def arm(desired_crew: str, desired_subject: str, now: float, window_s: float) -> Armed:
    return Armed(
        desired_crew=desired_crew,
        desired_subject=desired_subject,
        expires_at=now + window_s,
        attempts=0,
    )


def observe(
    state: StabilizerState,
    observed_subject: str,
    now: float,
    max_attempts: int,
    cooldown_s: float,
) -> tuple[StabilizerState, Correction]:
    """Advance ``state`` given the subject seen on this run."""
    if not isinstance(state, Armed):
        return state, Correction.NONE

    matches = observed_subject == state.desired_subject
    if now >= state.expires_at:
        if matches:
            return Resolved(state.desired_subject), Correction.NONE
        return Expired(state.desired_subject, now + cooldown_s), Correction.NONE
    if matches:
        return state, Correction.NONE
    if state.attempts < max_attempts:
        return replace(state, attempts=state.attempts + 1), Correction.REWRITE
    return Expired(state.desired_subject, now + cooldown_s), Correction.NONE


# ─────────────────────────────────────────────────────────────────────────────
# Stateful driver
# ─────────────────────────────────────────────────────────────────────────────

class SubjectWriter(Protocol):
    async def update_activity(self, activity_id: Any, fields: dict[str, Any]) -> dict[str, Any]: ...


class LabelStabilizer:
    """Applies the rename policy and defends the result.

    Modes:
        never       never rewrite
        if_missing  rewrite only when no crew tag is embedded yet
        always      rewrite until the embedded tag matches the resolved crew
    """

    def __init__(
        self,
        clock: Clock,
        writer: SubjectWriter,
        mode: str = "always",
        window_s: float = 120.0,
        max_attempts: int = 2,
        cooldown_s: float = 6 * 60 * 60,
        max_entries: int = 5000,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.mode = mode
        self.window_s = window_s
        self.max_attempts = max_attempts
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._writer = writer
        self._metrics = metrics or MetricsCollector()
        self._states: ExpiringStore[StabilizerState] = ExpiringStore(
            clock, "stabilizer", max_entries
        )

    def state(self, activity_id: Any) -> StabilizerState:
        return self._states.get(str(activity_id)) or UNARMED

    def _save(self, activity_id: Any, state: StabilizerState) -> None:
        key = str(activity_id)
        now = self._clock.timestamp()
        match state:
            case Armed(expires_at=expires_at):
                # Outlive the window so the post-window observation still
                # sees Armed and can settle into Resolved or Expired.
                self._states.put(key, state, (expires_at - now) + self.cooldown_s)
            case Expired(until=until):
                self._states.put(key, state, max(0.0, until - now))
            case _:
                self._states.pop(key)

    def desired_subject(self, subject: str, crew: str | None) -> str | None:
        """Subject the policy wants, or None when no rewrite applies."""
        if not crew or self.mode == "never":
            return None
        if self.mode == "if_missing" and has_crew_tag(subject):
            return None
        return embed_crew_tag(subject, crew)

    async def _write(self, activity_id: Any, subject: str) -> bool:
        try:
            await self._writer.update_activity(activity_id, {"subject": subject})
        except RecordSystemError as e:
            logger.warning(
                "activity_rename_failed",
                activity_id=activity_id,
                subject=subject,
                error=str(e),
            )
            return False
        return True

    async def stabilize(self, activity_id: Any, subject: str, crew: str | None) -> str:
        """Rename or defend as needed. Returns the subject as it now reads."""
        desired = self.desired_subject(subject, crew)
        if desired is None:
            return subject

        state = self.state(activity_id)
        now = self._clock.timestamp()

        if isinstance(state, Armed) and state.desired_subject == desired:
            new_state, correction = observe(
                state, subject, now, self.max_attempts, self.cooldown_s
            )
            self._save(activity_id, new_state)
            if correction is Correction.REWRITE:
                logger.info(
                    "activity_rename_corrected",
                    activity_id=activity_id,
                    observed=subject,
                    desired=desired,
                    attempt=new_state.attempts,  # type: ignore[union-attr]
                )
                if not await self._write(activity_id, desired):
                    return subject
                self._metrics.inc("rename_corrections_total")
                return desired
            if isinstance(new_state, Expired):
                logger.warning(
                    "activity_rename_abandoned",
                    activity_id=activity_id,
                    observed=subject,
                    desired=desired,
                )
            return subject

        if isinstance(state, Expired) and state.desired_subject == desired:
            return subject

        if desired == subject:
            return subject

        if not await self._write(activity_id, desired):
            return subject
        logger.info("activity_renamed", activity_id=activity_id, subject=desired)
        self._save(activity_id, arm(normalize_crew(crew or ""), desired, now, self.window_s))
        return desired
