from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable


LOCK_LEVELS = ("soft", "hard")


@dataclass(slots=True)
class StrikeEntry:
    count: int
    last: float


@dataclass(slots=True)
class LockdownEntry:
    level: str
    until: float
    by: int
    reason: str | None = None


class StrikeLedger:
    """Weighted strike counts per (guild, user) with stepwise time decay."""

    def __init__(self, decay_hours: float = 24.0, clock: Callable[[], float] = time.time) -> None:
        self.decay_seconds = max(1.0, float(decay_hours) * 3600.0)
        self._clock = clock
        self._entries: dict[tuple[int, int], StrikeEntry] = {}

    def count(self, guild_id: int, user_id: int) -> int:
        entry = self._entries.get((guild_id, user_id))
        return entry.count if entry is not None else 0

    def _window(self, decay_hours: float | None) -> float:
        if decay_hours is None:
            return self.decay_seconds
        return max(1.0, float(decay_hours) * 3600.0)

    def apply_decay(self, guild_id: int, user_id: int, decay_hours: float | None = None) -> int:
        entry = self._entries.get((guild_id, user_id))
        if entry is None:
            return 0
        elapsed = self._clock() - entry.last
        window = self._window(decay_hours)
        steps = int(math.floor(elapsed / window)) if elapsed > 0 else 0
        if steps <= 0 or entry.count <= 0:
            return entry.count
        entry.count = max(0, entry.count - steps)
        # Partial progress toward the next step is kept.
        entry.last += steps * window
        return entry.count

    def add(self, guild_id: int, user_id: int, weight: int, decay_hours: float | None = None) -> int:
        self.apply_decay(guild_id, user_id, decay_hours)
        key = (guild_id, user_id)
        entry = self._entries.get(key)
        now = self._clock()
        if entry is None:
            entry = StrikeEntry(count=0, last=now)
            self._entries[key] = entry
        entry.count += max(0, int(weight))
        entry.last = now
        return entry.count

    def clear(self, guild_id: int, user_id: int) -> None:
        self._entries.pop((guild_id, user_id), None)


class LockdownRegistry:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[tuple[int, int], LockdownEntry] = {}

    def lock(
        self,
        guild_id: int,
        user_id: int,
        by: int,
        minutes: int = 60,
        level: str = "soft",
        reason: str | None = None,
    ) -> LockdownEntry:
        if level not in LOCK_LEVELS:
            raise ValueError(f"lock level must be one of {', '.join(LOCK_LEVELS)}")
        entry = LockdownEntry(
            level=level,
            until=self._clock() + max(1, int(minutes)) * 60.0,
            by=by,
            reason=reason or None,
        )
        self._entries[(guild_id, user_id)] = entry
        return entry

    def get(self, guild_id: int, user_id: int) -> LockdownEntry | None:
        key = (guild_id, user_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.until:
            self._entries.pop(key, None)
            return None
        return entry

    def release(self, guild_id: int, user_id: int) -> bool:
        return self._entries.pop((guild_id, user_id), None) is not None
