from __future__ import annotations

import asyncio
import struct
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vigil_voice.services.transcription import (  # noqa: E402
    COMMAND_BOOST,
    WAKE_BOOST,
    GoogleSpeechTranscriber,
    PhraseHints,
    TranscriptionGateway,
    peak_normalize,
)


class _Provider:
    def __init__(self, name: str, result: str | None = None, error: Exception | None = None, delay: float = 0.0) -> None:
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def transcribe(self, pcm_mono_48k: bytes, hints: PhraseHints) -> str | None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


HINTS = PhraseHints.from_aliases(("vi", "vee"))


def test_secondary_provider_used_when_primary_fails() -> None:
    primary = _Provider("google", error=RuntimeError("503"))
    secondary = _Provider("local_whisper", result="  hey   vee  play music ")
    gateway = TranscriptionGateway([primary, secondary], HINTS, timeout_seconds=1.0)

    text = asyncio.run(gateway.transcribe(b"\x01\x00" * 100, guild_id=1, user_id=2))

    assert text == "hey vee play music"
    assert primary.calls == 1
    assert secondary.calls == 1


def test_empty_primary_result_falls_through() -> None:
    primary = _Provider("google", result="   ")
    secondary = _Provider("local_whisper", result="vee stop")
    gateway = TranscriptionGateway([primary, secondary], HINTS)

    assert asyncio.run(gateway.transcribe(b"\x01\x00" * 100)) == "vee stop"


def test_timeout_and_failure_everywhere_yields_none() -> None:
    slow = _Provider("google", result="late", delay=0.5)
    broken = _Provider("local_whisper", error=RuntimeError("model missing"))
    gateway = TranscriptionGateway([slow, broken], HINTS, timeout_seconds=0.05)

    assert asyncio.run(gateway.transcribe(b"\x01\x00" * 100)) is None
    assert broken.calls == 1


def test_empty_audio_skips_providers() -> None:
    provider = _Provider("google", result="x")
    gateway = TranscriptionGateway([provider], HINTS)

    assert asyncio.run(gateway.transcribe(b"")) is None
    assert provider.calls == 0


def test_phrase_hints_include_greeting_forms() -> None:
    assert HINTS.wake[:4] == ("vi", "hey vi", "ok vi", "okay vi")
    assert "play" in HINTS.commands
    assert "vee" in HINTS.prompt()


def test_google_payload_boosts_wake_above_commands() -> None:
    transcriber = GoogleSpeechTranscriber(api_key="k")
    payload = transcriber._payload(b"\x10\x00" * 10, HINTS)
    contexts = payload["config"]["speechContexts"]

    assert contexts[0]["boost"] == WAKE_BOOST
    assert contexts[1]["boost"] == COMMAND_BOOST
    assert payload["config"]["sampleRateHertz"] == 48000


def test_peak_normalize_caps_gain() -> None:
    quiet = struct.pack("<h", 100) * 10
    boosted = peak_normalize(quiet)

    assert struct.unpack("<h", boosted[:2])[0] == 500
    loud = struct.pack("<h", 30000) * 10
    assert abs(struct.unpack("<h", peak_normalize(loud)[:2])[0]) <= 32767
