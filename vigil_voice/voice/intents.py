from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class VoiceIntent:
    kind: str
    text: str = ""
    query: str = ""
    percent: int = 0
    location: str | None = None
    when: str = "now"


NONE_INTENT = VoiceIntent(kind="none")

_SAY_RE = re.compile(r"^(?:say|speak|tell|repeat)\s+(.+)", re.IGNORECASE)
_LEAVE_RE = re.compile(
    r"^(?:leave|disconnect|go away|you can go|you can leave|you may leave|get out)[.!?]*$",
    re.IGNORECASE,
)
_LEAVE_CHANNEL_RE = re.compile(
    r"^(?:leave|disconnect)\s+(?:the\s+)?(?:(?:voice|vc)(?:\s+(?:channel|chat))?|call|channel|chat)\b",
    re.IGNORECASE,
)
_BEEP_RE = re.compile(r"^(?:beep|tone|audio test|test (?:audio|sound))[.!?]*$", re.IGNORECASE)
_PLAY_RE = re.compile(r"^play\s+(.+?)(?:\s*[.?!'\"]*)$", re.IGNORECASE)
_PAUSE_RE = re.compile(r"^(?:pause|pause music)[.!?]*$", re.IGNORECASE)
_RESUME_RE = re.compile(r"^(?:resume|continue|resume music)[.!?]*$", re.IGNORECASE)
_SKIP_RE = re.compile(r"^(?:skip|next)[.!?]*$", re.IGNORECASE)
_STOP_RE = re.compile(r"^(?:stop|stop music|clear queue)[.!?]*$", re.IGNORECASE)
_VOLUME_RE = re.compile(r"^volume\s+(\d{1,3})\s*%?[.!?]*$", re.IGNORECASE)

_WEATHER_LEAD_RE = re.compile(r"^weather\b", re.IGNORECASE)
_WEATHER_ASK_RE = re.compile(r"(?:what'?s|what is|how'?s|tell me|give me).*(?:weather|forecast)", re.IGNORECASE)
_LOCATION_RE = re.compile(r"\b(?:in|for|at)\s+([a-z][\w\s,.'-]{2,})", re.IGNORECASE)
_TOMORROW_RE = re.compile(r"\btomorrow\b", re.IGNORECASE)


def extract_when(text: str) -> str:
    return "tomorrow" if _TOMORROW_RE.search(text) else "now"


def extract_location(text: str) -> str | None:
    match = _LOCATION_RE.search(text)
    if match is None:
        return None
    location = re.sub(r"[?.!,;:\s]+$", "", match.group(1).strip())
    # "weather in paris tomorrow" names paris, not "paris tomorrow"
    location = re.sub(r"\s+(?:tomorrow|today|now|right now)$", "", location, flags=re.IGNORECASE).strip()
    return location or None


def parse_weather_request(text: str) -> VoiceIntent | None:
    cleaned = text.strip()
    if not (_WEATHER_LEAD_RE.search(cleaned) or _WEATHER_ASK_RE.search(cleaned)):
        return None
    return VoiceIntent(kind="weather", location=extract_location(cleaned), when=extract_when(cleaned))


def parse_voice_command(text: str) -> VoiceIntent:
    cleaned = text.strip()
    if not cleaned:
        return NONE_INTENT

    match = _SAY_RE.match(cleaned)
    if match:
        return VoiceIntent(kind="say", text=match.group(1).strip())
    if _LEAVE_RE.match(cleaned) or _LEAVE_CHANNEL_RE.match(cleaned):
        return VoiceIntent(kind="leave")
    if _BEEP_RE.match(cleaned):
        return VoiceIntent(kind="beep")

    weather = parse_weather_request(cleaned)
    if weather is not None:
        return weather

    match = _PLAY_RE.match(cleaned)
    if match:
        return VoiceIntent(kind="music_play", query=match.group(1).strip())
    if _PAUSE_RE.match(cleaned):
        return VoiceIntent(kind="music_pause")
    if _RESUME_RE.match(cleaned):
        return VoiceIntent(kind="music_resume")
    if _SKIP_RE.match(cleaned):
        return VoiceIntent(kind="music_skip")
    if _STOP_RE.match(cleaned):
        return VoiceIntent(kind="music_stop")
    match = _VOLUME_RE.match(cleaned)
    if match:
        return VoiceIntent(kind="music_volume", percent=max(0, min(100, int(match.group(1)))))
    return NONE_INTENT
