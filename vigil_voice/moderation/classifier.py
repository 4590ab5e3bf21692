from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import FrozenSet

from ..config import DEFAULT_BENIGN_PHRASES, Settings


_INVISIBLE_RE = re.compile("[\u200b-\u200f\u202a-\u202e\u2060-\u206f\ufe00-\ufe0f]")
_SEPARATORS_RE = re.compile(r"[\s._\-/\\|]+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

AI_SLURS_BASE = ("clanker", "wireback", "tincan", "toaster")
AI_SLUR_PATTERNS = (
    re.compile(r"\bc\s*la\s*n\s*k(?:e|er|a|ah|uh)?\b"),
    re.compile(r"\bwire\s*[-_ ]*\s*back(?:s)?\b"),
    re.compile(r"\btin\s*[-_ ]*\s*can(?:s)?\b"),
    re.compile(r"\btoaster(?:s)?\b"),
)

HARASS_WORDS = re.compile(r"\b(?:idiot|moron|trash|loser|clown)\b")

INTENT = re.compile(r"\b(?:i\s*(?:will|gonna|going\s*to|'ll|'m\s*gonna)|i\s*want\s*to|let\s*me)\b")
VIOLENT_VERB = re.compile(r"\b(?:kill|shoot|stab|hurt|harm|beat|jump)\b")
TARGET = re.compile(r"\b(?:you|u|him|her|them|that\s+(?:man|woman|boy|girl|kid|dude|person))\b")
REAL_WORLD = re.compile(
    r"\b(?:school|campus|work|office|airport|mall|store|house|home|neighborhood|church|hospital|police|threat|report)\b"
)
GAME_CONTEXT = re.compile(
    r"\b(?:ranked|match|queue|ult|ability|loadout|build|kit|spawn|objective|payload|round|nerf|buff|cd|cooldown"
    r"|team|heal|dps|tank|support|site|defuse|plant|spike|nade|rocket|gg|mid|bot|top|jungle|adc|frag|map|arena"
    r"|rivals)\b"
)
BOMB_ACTION = re.compile(r"\b(?:(?:plant|place|set|rig|detonat\w*|build|make)\s+(?:a\s*)?bomb|bomb\s+threat)\b")
KYS_SPARSE = re.compile(r"\bk\s*[^a-z0-9]?y\s*[^a-z0-9]?s\b")
SELF_REFLEXIVE = re.compile(r"\b(?:your\s*self|ur\s*self|yourself)\b")
_TOKEN_SPLIT_RE = re.compile(r"[\s.,!?;:()\"'`]+")

UNLOCKED_THRESHOLD = 6
SOFT_LOCK_THRESHOLD = 4
HARD_LOCK_THRESHOLD = 3
SELF_HARM_TOKEN_WINDOW = 6


@dataclass(frozen=True, slots=True)
class NormalizedText:
    spaced: str
    squashed: str


@dataclass(frozen=True, slots=True)
class ModerationPolicy:
    enabled: bool = True
    detect_harassment: bool = True
    detect_threats: bool = True
    detect_ai_harassment: bool = True
    delete_text: bool = True
    strikes_timeout: int = 2
    strikes_kick: int = 4
    strikes_ban: int = 6
    timeout_minutes: int = 10
    decay_hours: float = 24.0
    log_channel: str = "vi-mod-logs"
    exempt_role_ids: FrozenSet[int] = field(default_factory=frozenset)
    exempt_channel_ids: FrozenSet[int] = field(default_factory=frozenset)
    relaxed_channel_ids: FrozenSet[int] = field(default_factory=frozenset)
    allow_user_ids: FrozenSet[int] = field(default_factory=frozenset)
    benign_phrases: tuple[str, ...] = DEFAULT_BENIGN_PHRASES

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModerationPolicy":
        return cls(
            enabled=settings.automod_enabled,
            detect_harassment=settings.automod_detect_harassment,
            detect_threats=settings.automod_detect_threats,
            detect_ai_harassment=settings.automod_detect_ai_harassment,
            delete_text=settings.automod_delete_text,
            strikes_timeout=settings.automod_strikes_timeout,
            strikes_kick=settings.automod_strikes_kick,
            strikes_ban=settings.automod_strikes_ban,
            timeout_minutes=settings.automod_timeout_minutes,
            decay_hours=settings.automod_decay_hours,
            log_channel=settings.automod_log_channel,
            exempt_role_ids=frozenset(settings.automod_exempt_role_ids),
            exempt_channel_ids=frozenset(settings.automod_exempt_channel_ids),
            relaxed_channel_ids=frozenset(settings.automod_relaxed_channel_ids),
            allow_user_ids=frozenset(settings.automod_allow_user_ids),
            benign_phrases=tuple(settings.automod_benign_phrases),
        )


@dataclass(slots=True)
class ModerationVerdict:
    violated: bool
    reason: str | None = None
    weight: int = 0
    soft: bool = False
    detail: str = ""


def normalize_for_moderation(text: str) -> NormalizedText:
    """Defeat spacing, zero-width joiners, diacritics and separator tricks."""
    value = unicodedata.normalize("NFKC", text or "").lower()
    value = "".join(ch for ch in unicodedata.normalize("NFD", value) if not unicodedata.combining(ch))
    value = _INVISIBLE_RE.sub("", value)
    value = value.replace("\u2019", "'").replace("\u2018", "'")
    spaced = _SEPARATORS_RE.sub(" ", value).strip()
    squashed = _NON_ALNUM_RE.sub("", spaced)
    return NormalizedText(spaced=spaced, squashed=squashed)


def match_ai_harassment(text: str) -> tuple[bool, str]:
    normalized = normalize_for_moderation(text)
    for pattern in AI_SLUR_PATTERNS:
        if pattern.search(normalized.spaced):
            return True, f"regex:{pattern.pattern}"
    for base in AI_SLURS_BASE:
        if base in normalized.squashed:
            return True, f"base:{base}"
    return False, ""


def is_benign(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = (text or "").lower()
    return any(phrase.lower() in lowered for phrase in phrases if phrase)


def intent_score(text: str, *, relaxed: bool = False, lock_level: str | None = None) -> int:
    """Weighted threat signal sum; text is expected in spaced normalized form."""
    score = 0
    if INTENT.search(text):
        score += 2
    if VIOLENT_VERB.search(text):
        score += 1
    if TARGET.search(text):
        score += 2
    if REAL_WORLD.search(text):
        score += 2
    if BOMB_ACTION.search(text):
        score += 3
    if GAME_CONTEXT.search(text):
        score -= 2
    if relaxed:
        score -= 2
    if lock_level == "hard":
        score += 2
    return score


def threat_threshold(lock_level: str | None) -> int:
    if lock_level == "hard":
        return HARD_LOCK_THRESHOLD
    if lock_level == "soft":
        return SOFT_LOCK_THRESHOLD
    return UNLOCKED_THRESHOLD


def _self_harm_window_hit(text: str) -> bool:
    tokens = [token for token in _TOKEN_SPLIT_RE.split(text) if token]
    verb_index = next((i for i, token in enumerate(tokens) if VIOLENT_VERB.search(token)), -1)
    if verb_index < 0:
        return False
    self_index = next((i for i, token in enumerate(tokens) if SELF_REFLEXIVE.search(token)), -1)
    if self_index < 0:
        # "your self" / "ur self" span two tokens
        match = SELF_REFLEXIVE.search(text)
        if match is None:
            return False
        self_index = len([t for t in _TOKEN_SPLIT_RE.split(text[: match.start()]) if t])
    return abs(verb_index - self_index) <= SELF_HARM_TOKEN_WINDOW


def classify(
    text: str,
    policy: ModerationPolicy,
    *,
    relaxed: bool = False,
    lock_level: str | None = None,
    addressed_to_bot: bool = False,
) -> ModerationVerdict:
    raw = (text or "").strip()
    if not raw:
        return ModerationVerdict(violated=False)
    if is_benign(raw, policy.benign_phrases):
        return ModerationVerdict(violated=False, detail="benign_phrase")

    normalized = normalize_for_moderation(raw)
    spaced = normalized.spaced
    locked = lock_level is not None

    if policy.detect_ai_harassment and addressed_to_bot:
        hit, term = match_ai_harassment(raw)
        if hit:
            return ModerationVerdict(violated=True, reason="ai-harassment", weight=2, detail=term)

    if policy.detect_harassment and HARASS_WORDS.search(spaced):
        if lock_level == "hard":
            return ModerationVerdict(violated=True, reason="harassment", weight=2)
        return ModerationVerdict(violated=True, reason="harassment (soft)", weight=0, soft=True)

    if policy.detect_threats:
        if KYS_SPARSE.search(spaced) or _self_harm_window_hit(spaced):
            if locked:
                return ModerationVerdict(violated=True, reason="self-harm encouragement", weight=3)
            return ModerationVerdict(violated=True, reason="self-harm (soft)", weight=0, soft=True)

        score = intent_score(spaced, relaxed=relaxed, lock_level=lock_level)
        if score >= threat_threshold(lock_level):
            return ModerationVerdict(violated=True, reason="threat", weight=3, detail=f"score={score}")

    return ModerationVerdict(violated=False)
