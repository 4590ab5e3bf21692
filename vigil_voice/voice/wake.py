from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from ..config import DEFAULT_WAKE_ALIASES, Settings

logger = logging.getLogger("vigil_voice")


GREETING_PREFIXES = frozenset({"hey", "ok", "okay", "yo", "oi"})
SENSITIVITY_TOLERANCE = {"strict": 1, "default": 2, "lenient": 3}

_PHONETIC_STEPS: tuple[tuple[str, str], ...] = (
    (r"ph", "f"),
    (r"bh", "b"),
    (r"wh", "w"),
    (r"[yij]", "i"),
    (r"[fv]", "v"),
    (r"[bp]", "b"),
    (r"[ckq]", "k"),
    (r"[^a-z0-9-]+", ""),
)


def phonetic_normalize(token: str) -> str:
    """Collapse letters that speech recognizers confuse into one class each."""
    value = token.lower()
    for pattern, replacement in _PHONETIC_STEPS:
        value = re.sub(pattern, replacement, value)
    return value


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


_WORD_SEPARATOR_RE = re.compile(r"[^\w\s'-]|_")
_REMAINDER_LEAD_CHARS = " \t,.:;!?-"


def split_words(text: str) -> list[str]:
    # Hyphen survives so "vi-bot" stays one token.
    cleaned = _WORD_SEPARATOR_RE.sub(" ", text.lower())
    return [word for word in cleaned.split() if word]


def text_after_words(text: str, count: int) -> str:
    """Original text following the first ``count`` words, case and punctuation intact."""
    # Substitution keeps offsets, so word ends index straight into ``text``.
    cleaned = _WORD_SEPARATOR_RE.sub(" ", text)
    end = 0
    for position, match in enumerate(re.finditer(r"\S+", cleaned), start=1):
        if position > count:
            break
        end = match.end()
    return text[end:].lstrip(_REMAINDER_LEAD_CHARS).strip()


@dataclass(frozen=True, slots=True)
class WakeProfile:
    aliases: tuple[str, ...] = DEFAULT_WAKE_ALIASES
    required: bool = True
    sensitivity: str = "default"

    @property
    def tolerance(self) -> int:
        return SENSITIVITY_TOLERANCE.get(self.sensitivity, 2)

    @classmethod
    def from_settings(cls, settings: Settings) -> "WakeProfile":
        return cls(
            aliases=tuple(settings.wake_aliases) or DEFAULT_WAKE_ALIASES,
            required=settings.wake_required,
            sensitivity=settings.wake_sensitivity,
        )


@dataclass(slots=True)
class WakeResult:
    wake: bool
    confidence: float
    alias: str | None = None
    remainder: str | None = None
    reason: str = ""


def best_alias(token: str, aliases: Iterable[str]) -> tuple[str | None, int]:
    normalized = phonetic_normalize(token)
    best: str | None = None
    best_distance = 0
    for alias in aliases:
        distance = levenshtein(normalized, phonetic_normalize(alias))
        if best is None or distance < best_distance:
            best = alias
            best_distance = distance
    return best, best_distance


def detect_wake(transcript: str, profile: WakeProfile, *, session_active: bool = False) -> WakeResult:
    """Decide whether an utterance engages the agent.

    The first word (after an optional greeting like "hey") is compared to
    every alias after phonetic normalization. A profile that does not
    require the wake word still only engages without an alias when the
    speaker already has an open session.
    """
    raw = (transcript or "").strip()
    if not raw:
        return WakeResult(wake=False, confidence=0.0, reason="empty_input")
    words = split_words(raw)
    if not words:
        return WakeResult(wake=False, confidence=0.0, reason="empty_input")

    index = 1 if words[0] in GREETING_PREFIXES else 0
    candidate = words[index] if index < len(words) else ""
    matchable = bool(candidate) and bool(phonetic_normalize(candidate))
    alias, distance = best_alias(candidate, profile.aliases) if matchable else (None, 0)

    if alias is not None and distance <= profile.tolerance:
        confidence = max(0.6, 1.0 - distance * 0.3) + (0.1 if index == 1 else 0.0)
        return WakeResult(
            wake=True,
            confidence=min(1.0, confidence),
            alias=alias,
            remainder=text_after_words(raw, index + 1),
            reason="alias_matched",
        )

    if not profile.required and session_active:
        return WakeResult(wake=True, confidence=0.5, remainder=raw, reason="session_continuation")
    return WakeResult(wake=False, confidence=0.0, reason="no_alias_matched")


class WakeDetector:
    def __init__(self, settings: Settings | None = None, default_profile: WakeProfile | None = None) -> None:
        if default_profile is None:
            default_profile = WakeProfile.from_settings(settings) if settings is not None else WakeProfile()
        self.default_profile = default_profile
        self._profiles: dict[int, WakeProfile] = {}

    def profile_for(self, guild_id: int | None) -> WakeProfile:
        if guild_id is None:
            return self.default_profile
        profile = self._profiles.get(guild_id)
        if profile is None:
            profile = self.default_profile
            self._profiles[guild_id] = profile
        return profile

    def set_profile(self, guild_id: int, profile: WakeProfile) -> None:
        self._profiles[guild_id] = profile
        logger.info(
            "[voice.wake] profile_set guild=%s aliases=%s required=%s sensitivity=%s",
            guild_id,
            ",".join(profile.aliases),
            profile.required,
            profile.sensitivity,
        )

    def detect(self, transcript: str, guild_id: int | None = None, *, session_active: bool = False) -> WakeResult:
        return detect_wake(transcript, self.profile_for(guild_id), session_active=session_active)
