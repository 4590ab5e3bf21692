from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Set

from dotenv import load_dotenv


load_dotenv()


DEFAULT_WAKE_ALIASES = ("vi", "vee", "vie", "vii", "v", "vy", "vee-bot", "vi-bot")
DEFAULT_BENIGN_PHRASES = ("$100", "$1000", "worth it")
WAKE_SENSITIVITIES = ("strict", "default", "lenient")


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_id_set(name: str, aliases: tuple[str, ...] = ()) -> Set[int]:
    raw = (_env_lookup(name, aliases) or "").strip()
    if not raw:
        return set()
    result: Set[int] = set()
    for chunk in raw.split(","):
        value = chunk.strip()
        if not value:
            continue
        try:
            result.add(int(value))
        except ValueError:
            continue
    return result


def _env_csv(name: str, default: tuple[str, ...], aliases: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    values = tuple(chunk.strip() for chunk in raw.split(",") if chunk.strip())
    return values or default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    discord_token: str
    command_prefix: str
    discord_message_content_intent: bool
    discord_members_intent: bool
    agent_name: str

    wake_aliases: tuple[str, ...]
    wake_required: bool
    wake_sensitivity: str
    wake_session_seconds: float
    wake_reprompt_ms: int

    voice_enabled: bool
    voice_silence_rms: int
    voice_silence_ms: int
    voice_min_turn_ms: int
    voice_max_turn_seconds: int
    voice_interrupt_on_speech: bool

    google_speech_api_key: str
    google_speech_language: str
    local_stt_enabled: bool
    local_stt_model: str
    local_stt_device: str
    local_stt_compute_type: str
    local_stt_language: str
    transcription_timeout_seconds: int

    tts_provider: str
    elevenlabs_api_key: str
    elevenlabs_voice_id: str
    edge_tts_voice: str
    tts_max_attempts: int
    tts_backoff_seconds: float
    tts_cache_size: int
    ffmpeg_path: str

    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    conversation_window_turns: int

    automod_enabled: bool
    automod_detect_harassment: bool
    automod_detect_threats: bool
    automod_detect_ai_harassment: bool
    automod_delete_text: bool
    automod_strikes_timeout: int
    automod_strikes_kick: int
    automod_strikes_ban: int
    automod_timeout_minutes: int
    automod_decay_hours: float
    automod_log_channel: str
    automod_exempt_role_ids: Set[int]
    automod_exempt_channel_ids: Set[int]
    automod_relaxed_channel_ids: Set[int]
    automod_allow_user_ids: Set[int]
    automod_benign_phrases: tuple[str, ...]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            discord_members_intent=_env_bool("DISCORD_MEMBERS_INTENT", True),
            agent_name=_env_str("AGENT_NAME", "Vi"),
            wake_aliases=tuple(a.lower() for a in _env_csv("WAKE_ALIASES", DEFAULT_WAKE_ALIASES)),
            wake_required=_env_bool("REQUIRE_WAKE_WORD", True, aliases=("WAKE_REQUIRED",)),
            wake_sensitivity=_env_str("WAKE_SENSITIVITY", "default").lower(),
            wake_session_seconds=_env_float("WAKE_SESSION_SECONDS", 15.0),
            wake_reprompt_ms=_env_int("WAKE_REPROMPT_MS", 5000),
            voice_enabled=_env_bool("VOICE_ENABLED", True),
            voice_silence_rms=_env_int("VOICE_SILENCE_RMS", 95),
            voice_silence_ms=_env_int("VOICE_SILENCE_MS", 800),
            voice_min_turn_ms=_env_int("VOICE_MIN_TURN_MS", 500),
            voice_max_turn_seconds=_env_int("VOICE_MAX_TURN_SECONDS", 20),
            voice_interrupt_on_speech=_env_bool("VOICE_INTERRUPT_ON_SPEECH", True),
            google_speech_api_key=_env_str("GOOGLE_SPEECH_API_KEY", "", aliases=("GOOGLE_API_KEY",)),
            google_speech_language=_env_str("GOOGLE_SPEECH_LANGUAGE", "en-US"),
            local_stt_enabled=_env_bool("LOCAL_STT_ENABLED", True),
            local_stt_model=_env_str("LOCAL_STT_MODEL", "small"),
            local_stt_device=_env_str("LOCAL_STT_DEVICE", "auto"),
            local_stt_compute_type=_env_str("LOCAL_STT_COMPUTE_TYPE", "int8"),
            local_stt_language=_env_str("LOCAL_STT_LANGUAGE", "en"),
            transcription_timeout_seconds=_env_int("TRANSCRIPTION_TIMEOUT_SECONDS", 20),
            tts_provider=_env_str("TTS_PROVIDER", "elevenlabs").lower(),
            elevenlabs_api_key=_env_str("ELEVENLABS_API_KEY", ""),
            elevenlabs_voice_id=_env_str("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
            edge_tts_voice=_env_str("EDGE_TTS_VOICE", "en-US-AriaNeural"),
            tts_max_attempts=_env_int("TTS_MAX_ATTEMPTS", 3),
            tts_backoff_seconds=_env_float("TTS_BACKOFF_SECONDS", 0.3),
            tts_cache_size=_env_int("TTS_CACHE_SIZE", 256),
            ffmpeg_path=_env_str("FFMPEG_PATH", "ffmpeg"),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 30),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.7),
            conversation_window_turns=_env_int("CONVERSATION_WINDOW_TURNS", 12),
            automod_enabled=_env_bool("AUTOMOD_ENABLED", True, aliases=("VI_AUTOMOD",)),
            automod_detect_harassment=_env_bool(
                "AUTOMOD_DETECT_HARASSMENT", True, aliases=("VI_AUTOMOD_DETECT_HARASS",)
            ),
            automod_detect_threats=_env_bool("AUTOMOD_DETECT_THREATS", True, aliases=("VI_AUTOMOD_DETECT_THREATS",)),
            automod_detect_ai_harassment=_env_bool(
                "AUTOMOD_DETECT_AI_HARASSMENT", True, aliases=("VI_AUTOMOD_DETECT_AI_HARASS",)
            ),
            automod_delete_text=_env_bool("AUTOMOD_DELETE_TEXT", True, aliases=("VI_AUTOMOD_DELETE",)),
            automod_strikes_timeout=_env_int("AUTOMOD_STRIKES_TIMEOUT", 2, aliases=("VI_AUTOMOD_STRIKES_TIMEOUT",)),
            automod_strikes_kick=_env_int("AUTOMOD_STRIKES_KICK", 4, aliases=("VI_AUTOMOD_STRIKES_KICK",)),
            automod_strikes_ban=_env_int("AUTOMOD_STRIKES_BAN", 6, aliases=("VI_AUTOMOD_STRIKES_BAN",)),
            automod_timeout_minutes=_env_int("AUTOMOD_TIMEOUT_MINUTES", 10, aliases=("VI_AUTOMOD_TIMEOUT_MIN",)),
            automod_decay_hours=_env_float("AUTOMOD_DECAY_HOURS", 24.0, aliases=("VI_AUTOMOD_DECAY_HOURS",)),
            automod_log_channel=_env_str("AUTOMOD_LOG_CHANNEL", "vi-mod-logs", aliases=("VI_AUTOMOD_LOG_CHANNEL",)),
            automod_exempt_role_ids=_env_id_set("AUTOMOD_EXEMPT_ROLES", aliases=("VI_AUTOMOD_EXEMPT_ROLES",)),
            automod_exempt_channel_ids=_env_id_set("AUTOMOD_EXEMPT_CHANNELS", aliases=("VI_AUTOMOD_EXEMPT_CHANNELS",)),
            automod_relaxed_channel_ids=_env_id_set(
                "AUTOMOD_RELAXED_CHANNELS", aliases=("VI_AUTOMOD_RELAXED_CHANNELS",)
            ),
            automod_allow_user_ids=_env_id_set("AUTOMOD_ALLOW_USERS", aliases=("VI_AUTOMOD_ALLOW_USERS",)),
            automod_benign_phrases=_env_csv("AUTOMOD_BENIGN_PHRASES", DEFAULT_BENIGN_PHRASES),
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.command_prefix.strip():
            raise ValueError("DISCORD_COMMAND_PREFIX cannot be empty")

        if not self.wake_aliases:
            raise ValueError("WAKE_ALIASES cannot be empty")
        if self.wake_sensitivity not in WAKE_SENSITIVITIES:
            raise ValueError("WAKE_SENSITIVITY must be one of strict, default, lenient")
        if self.wake_session_seconds < 1:
            raise ValueError("WAKE_SESSION_SECONDS must be >= 1")
        if self.wake_reprompt_ms < 0:
            raise ValueError("WAKE_REPROMPT_MS must be >= 0")

        if self.voice_silence_rms < 20:
            raise ValueError("VOICE_SILENCE_RMS must be >= 20")
        if self.voice_silence_ms < 180:
            raise ValueError("VOICE_SILENCE_MS must be >= 180")
        if self.voice_min_turn_ms < 180:
            raise ValueError("VOICE_MIN_TURN_MS must be >= 180")
        if self.voice_max_turn_seconds < 4:
            raise ValueError("VOICE_MAX_TURN_SECONDS must be >= 4")

        if not self.google_speech_api_key and not self.local_stt_enabled:
            raise ValueError("Set GOOGLE_SPEECH_API_KEY or enable LOCAL_STT_ENABLED")
        if self.transcription_timeout_seconds < 3:
            raise ValueError("TRANSCRIPTION_TIMEOUT_SECONDS must be >= 3")

        if self.tts_provider not in {"elevenlabs", "edge"}:
            raise ValueError("TTS_PROVIDER must be elevenlabs or edge")
        if self.tts_provider == "elevenlabs" and not self.elevenlabs_api_key:
            raise ValueError("ELEVENLABS_API_KEY is required when TTS_PROVIDER=elevenlabs")
        if self.tts_max_attempts < 1:
            raise ValueError("TTS_MAX_ATTEMPTS must be >= 1")
        if self.tts_backoff_seconds < 0:
            raise ValueError("TTS_BACKOFF_SECONDS must be >= 0")
        if self.tts_cache_size < 0:
            raise ValueError("TTS_CACHE_SIZE must be >= 0")

        if not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if self.gemini_timeout_seconds < 5:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 5")
        if self.conversation_window_turns < 2:
            raise ValueError("CONVERSATION_WINDOW_TURNS must be >= 2")

        if self.automod_strikes_timeout < 1:
            raise ValueError("AUTOMOD_STRIKES_TIMEOUT must be >= 1")
        if not (self.automod_strikes_timeout <= self.automod_strikes_kick <= self.automod_strikes_ban):
            raise ValueError("AUTOMOD strike thresholds must satisfy timeout <= kick <= ban")
        if self.automod_timeout_minutes < 1:
            raise ValueError("AUTOMOD_TIMEOUT_MINUTES must be >= 1")
        if self.automod_decay_hours <= 0:
            raise ValueError("AUTOMOD_DECAY_HOURS must be > 0")
