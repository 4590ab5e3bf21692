from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vigil_voice.config import DEFAULT_WAKE_ALIASES, Settings  # noqa: E402


_TOUCHED = (
    "DISCORD_TOKEN",
    "WAKE_ALIASES",
    "WAKE_SENSITIVITY",
    "REQUIRE_WAKE_WORD",
    "WAKE_REQUIRED",
    "AUTOMOD_STRIKES_BAN",
    "VI_AUTOMOD_STRIKES_BAN",
    "AUTOMOD_EXEMPT_ROLES",
    "VI_AUTOMOD_EXEMPT_ROLES",
    "VOICE_SILENCE_MS",
    "TTS_PROVIDER",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _TOUCHED:
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(f"\ufeff{key}", raising=False)
    return monkeypatch


def _valid(**changes: object) -> Settings:
    settings = Settings.from_env()
    base = dataclasses.replace(
        settings,
        discord_token="token",
        command_prefix="!",
        wake_aliases=DEFAULT_WAKE_ALIASES,
        wake_sensitivity="default",
        wake_session_seconds=15.0,
        wake_reprompt_ms=5000,
        voice_silence_rms=95,
        voice_silence_ms=800,
        voice_min_turn_ms=500,
        voice_max_turn_seconds=20,
        local_stt_enabled=True,
        transcription_timeout_seconds=20,
        tts_provider="edge",
        tts_max_attempts=3,
        tts_backoff_seconds=0.3,
        tts_cache_size=16,
        gemini_api_key="key",
        gemini_timeout_seconds=30,
        conversation_window_turns=12,
        automod_strikes_timeout=2,
        automod_strikes_kick=4,
        automod_strikes_ban=6,
        automod_timeout_minutes=10,
        automod_decay_hours=24.0,
    )
    return dataclasses.replace(base, **changes)


def test_token_prefix_and_quotes_are_stripped(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("DISCORD_TOKEN", ' Bot "abc.def" ')

    assert Settings.from_env().discord_token == "abc.def"


def test_bom_prefixed_key_is_read(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("\ufeffWAKE_SENSITIVITY", "Lenient")

    assert Settings.from_env().wake_sensitivity == "lenient"


def test_wake_aliases_are_lowercased_and_trimmed(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("WAKE_ALIASES", " Vi, VEE ,, bot-vi ")

    assert Settings.from_env().wake_aliases == ("vi", "vee", "bot-vi")


def test_empty_alias_list_falls_back_to_defaults(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("WAKE_ALIASES", " , ,")

    assert Settings.from_env().wake_aliases == DEFAULT_WAKE_ALIASES


def test_legacy_names_are_honoured(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("VI_AUTOMOD_STRIKES_BAN", "9")
    clean_env.setenv("WAKE_REQUIRED", "no")

    settings = Settings.from_env()

    assert settings.automod_strikes_ban == 9
    assert settings.wake_required is False


def test_primary_name_wins_over_legacy(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("AUTOMOD_STRIKES_BAN", "7")
    clean_env.setenv("VI_AUTOMOD_STRIKES_BAN", "9")

    assert Settings.from_env().automod_strikes_ban == 7


def test_id_sets_skip_garbage(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("AUTOMOD_EXEMPT_ROLES", "123, abc, ,456")

    assert Settings.from_env().automod_exempt_role_ids == {123, 456}


def test_unparseable_int_keeps_default(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("VOICE_SILENCE_MS", "soon")

    assert Settings.from_env().voice_silence_ms == 800


def test_valid_settings_pass(clean_env: pytest.MonkeyPatch) -> None:
    _valid().validate()


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"discord_token": ""}, "DISCORD_TOKEN is required"),
        ({"wake_sensitivity": "loose"}, "WAKE_SENSITIVITY"),
        ({"wake_aliases": ()}, "WAKE_ALIASES"),
        ({"voice_silence_ms": 100}, "VOICE_SILENCE_MS"),
        ({"google_speech_api_key": "", "local_stt_enabled": False}, "GOOGLE_SPEECH_API_KEY"),
        ({"tts_provider": "elevenlabs", "elevenlabs_api_key": ""}, "ELEVENLABS_API_KEY"),
        ({"tts_provider": "espeak"}, "TTS_PROVIDER"),
        ({"gemini_api_key": ""}, "GEMINI_API_KEY"),
        ({"automod_strikes_kick": 8, "automod_strikes_ban": 6}, "timeout <= kick <= ban"),
    ],
)
def test_validate_rejects_bad_values(
    clean_env: pytest.MonkeyPatch,
    changes: dict[str, object],
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        _valid(**changes).validate()
