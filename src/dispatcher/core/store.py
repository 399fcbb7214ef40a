"""Bounded in-memory key-value store with expiry-on-read.

Backs the engine's volatile maps (dedup keys, publish fingerprints,
stabilizer states, tracked posts). Eviction is lazy: expired entries are
dropped when read, and a sweep runs only when an insert pushes the map past
``max_entries``. There is no background timer.

State is lost on restart. That is accepted: the record system redelivers.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from dispatcher.core.clock import Clock

logger = structlog.get_logger()

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float | None  # None: lives until popped or evicted


class ExpiringStore(Generic[V]):
    """Single-process store; every method is synchronous.

    Callers that need check-and-insert semantics across suspension points
    (``put_if_absent``) rely on this: no ``await`` happens inside a call.
    """

    def __init__(self, clock: Clock, name: str, max_entries: int = 5000) -> None:
        self.name = name
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _Entry[V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock.timestamp()):
            del self._entries[key]
            return None
        return entry.value

    def put(self, key: str, value: V, ttl_s: float | None = None) -> None:
        expires_at = None if ttl_s is None else self._clock.timestamp() + ttl_s
        self._entries[key] = _Entry(value=value, expires_at=expires_at)
        if len(self._entries) > self.max_entries:
            self._sweep()

    def put_if_absent(self, key: str, value: V, ttl_s: float | None = None) -> bool:
        """Insert unless a live entry exists. Returns True when inserted."""
        if self.get(key) is not None:
            return False
        self.put(key, value, ttl_s)
        return True

    def pop(self, key: str) -> V | None:
        entry = self._entries.pop(key, None)
        if entry is None or self._expired(entry, self._clock.timestamp()):
            return None
        return entry.value

    def items(self) -> Iterator[tuple[str, V]]:
        """Live entries, snapshotted so callers may mutate the store."""
        now = self._clock.timestamp()
        return iter([
            (k, e.value) for k, e in list(self._entries.items())
            if not self._expired(e, now)
        ])

    def clear(self) -> None:
        self._entries.clear()

    def _sweep(self) -> None:
        now = self._clock.timestamp()
        before = len(self._entries)
        self._entries = {
            k: e for k, e in self._entries.items() if not self._expired(e, now)
        }
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            # Soonest-expiring first; entries without expiry go last.
            victims = sorted(
                self._entries,
                key=lambda k: (
                    self._entries[k].expires_at is None,
                    self._entries[k].expires_at or 0.0,
                ),
            )[:overflow]
            for k in victims:
                del self._entries[k]
        logger.debug(
            "store_swept",
            store=self.name,
            before=before,
            after=len(self._entries),
        )
