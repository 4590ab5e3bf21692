from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class AwaitingSlot:
    slot: str
    hint: str | None = None


@dataclass(slots=True)
class Session:
    active_until: float
    awaiting: AwaitingSlot | None = None
    last_prompt_at: float | None = None


class SessionTracker:
    """Short follow-up windows per (guild, speaker).

    Every read checks expiry first and evicts, so there is no sweeper task.
    """

    def __init__(self, window_seconds: float = 15.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = max(1.0, float(window_seconds))
        self._clock = clock
        self._sessions: dict[tuple[int, int], Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, guild_id: int, user_id: int) -> Session | None:
        key = (guild_id, user_id)
        session = self._sessions.get(key)
        if session is None:
            return None
        if self._clock() > session.active_until:
            self._sessions.pop(key, None)
            return None
        return session

    def is_active(self, guild_id: int, user_id: int) -> bool:
        return self.get(guild_id, user_id) is not None

    def wake(self, guild_id: int, user_id: int) -> Session:
        session = Session(active_until=self._clock() + self.window_seconds)
        self._sessions[(guild_id, user_id)] = session
        return session

    def extend(self, guild_id: int, user_id: int) -> Session | None:
        session = self.get(guild_id, user_id)
        if session is not None:
            session.active_until = self._clock() + self.window_seconds
        return session

    def end(self, guild_id: int, user_id: int) -> None:
        self._sessions.pop((guild_id, user_id), None)

    def set_awaiting(self, guild_id: int, user_id: int, slot: AwaitingSlot | None) -> None:
        session = self.get(guild_id, user_id)
        if session is None:
            return
        session.awaiting = slot
        session.active_until = self._clock() + self.window_seconds

    def get_awaiting(self, guild_id: int, user_id: int) -> AwaitingSlot | None:
        session = self.get(guild_id, user_id)
        return session.awaiting if session is not None else None

    def mark_prompted(self, guild_id: int, user_id: int) -> None:
        session = self.get(guild_id, user_id)
        if session is not None:
            session.last_prompt_at = self._clock()

    def should_prompt_again(self, guild_id: int, user_id: int, min_interval_ms: int = 5000) -> bool:
        session = self.get(guild_id, user_id)
        if session is None or session.last_prompt_at is None:
            return True
        return (self._clock() - session.last_prompt_at) * 1000.0 >= min_interval_ms
