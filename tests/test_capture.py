from __future__ import annotations

import asyncio
import struct
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

pytest.importorskip("discord")

from vigil_voice.voice.capture import (  # noqa: E402
    CapturedTurn,
    CapturePipeline,
    downmix_stereo_to_mono,
    mono_duration_ms,
)
from vigil_voice.voice.playback import VoicePlayback  # noqa: E402
from vigil_voice.voice.state import PlaybackItem  # noqa: E402


def _pcm_frames(sample: int, frames: int) -> bytes:
    return struct.pack("<hh", sample, sample) * frames


class _FakeVoiceClient:
    def __init__(self) -> None:
        self.stop_calls = 0
        self._playing = False

    def is_connected(self) -> bool:
        return True

    def is_playing(self) -> bool:
        return self._playing

    def play(self, source: object, *, after: object) -> None:
        self._playing = True

    def stop(self) -> None:
        self.stop_calls += 1
        self._playing = False


class _Transcriber:
    def __init__(self, text: str | None = "vee play music", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[tuple[int, int, int]] = []

    async def transcribe(self, pcm_mono_48k: bytes, *, guild_id: int = 0, user_id: int = 0) -> str | None:
        self.calls.append((guild_id, user_id, len(pcm_mono_48k)))
        if self.error is not None:
            raise self.error
        return self.text


def _pipeline(playback: VoicePlayback, transcriber: _Transcriber, turns: list[CapturedTurn], **kwargs: object) -> CapturePipeline:
    async def on_transcript(turn: CapturedTurn) -> None:
        turns.append(turn)

    options = {"silence_rms": 95, "silence_ms": 800, "min_turn_ms": 500, "max_turn_seconds": 20.0}
    options.update(kwargs)
    return CapturePipeline(playback, transcriber, on_transcript, **options)  # type: ignore[arg-type]


async def _drain(pipeline: CapturePipeline, guild_id: int, user_id: int) -> None:
    session = pipeline.active_session(guild_id, user_id)
    assert session is not None and session.task is not None
    await session.task


def test_downmix_of_silence_is_silence_at_half_length() -> None:
    stereo = b"\x00" * 4000
    mono = downmix_stereo_to_mono(stereo)

    assert mono == b"\x00" * 2000
    assert downmix_stereo_to_mono(stereo + b"\x01\x02\x03") == mono


def test_downmix_stays_inside_int16_range() -> None:
    stereo = struct.pack("<hhhh", 32767, 32767, -32768, -32768)
    mono = downmix_stereo_to_mono(stereo)

    left, right = struct.unpack("<hh", mono)
    assert left == 32767
    assert right == -32768
    assert mono_duration_ms(b"\x00" * 96000) == 1000


def test_short_buffer_is_discarded_without_transcription() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        transcriber = _Transcriber()
        turns: list[CapturedTurn] = []
        pipeline = _pipeline(playback, transcriber, turns)

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 480))
        pipeline.speech_stopped(1, 42)
        await _drain(pipeline, 1, 42)

        assert transcriber.calls == []
        assert turns == []
        state = playback.get(1)
        assert state is not None and 42 not in state.busy_speakers

    asyncio.run(scenario())


def test_turn_is_transcribed_and_handed_over() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        transcriber = _Transcriber(text="vee play music")
        turns: list[CapturedTurn] = []
        pipeline = _pipeline(playback, transcriber, turns)

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 24000))
        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 24000))
        pipeline.speech_stopped(1, 42)
        await _drain(pipeline, 1, 42)

        assert transcriber.calls == [(1, 42, 96000)]
        assert len(turns) == 1
        assert turns[0].text == "vee play music"
        assert turns[0].user_label == "User42"
        assert turns[0].duration_ms == 1000
        assert pipeline.active_session(1, 42) is None

    asyncio.run(scenario())


def test_quiet_frames_do_not_open_a_capture() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        pipeline = _pipeline(playback, _Transcriber(), [])

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(10, 24000))

        assert pipeline.active_session(1, 42) is None

    asyncio.run(scenario())


def test_no_capture_without_voice_connection() -> None:
    async def scenario() -> None:
        pipeline = _pipeline(VoicePlayback(), _Transcriber(), [])

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 24000))

        assert pipeline.active_session(1, 42) is None

    asyncio.run(scenario())


def test_transcriber_failure_releases_busy_speaker() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        transcriber = _Transcriber(error=RuntimeError("provider down"))
        turns: list[CapturedTurn] = []
        pipeline = _pipeline(playback, transcriber, turns)

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 48000))
        state = playback.get(1)
        assert state is not None and 42 in state.busy_speakers
        pipeline.speech_stopped(1, 42)
        await _drain(pipeline, 1, 42)

        assert len(transcriber.calls) == 1
        assert turns == []
        assert 42 not in state.busy_speakers

    asyncio.run(scenario())


def test_hard_duration_cap_closes_capture_without_end_signal() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        transcriber = _Transcriber()
        turns: list[CapturedTurn] = []
        pipeline = _pipeline(playback, transcriber, turns, silence_ms=5000, max_turn_seconds=0.05)

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 48000))
        await asyncio.wait_for(_drain(pipeline, 1, 42), timeout=2.0)

        assert len(transcriber.calls) == 1
        assert len(turns) == 1

    asyncio.run(scenario())


def test_speech_start_interrupts_playback() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)
        playback.enqueue(1, PlaybackItem.from_pcm(b"\x00" * 3840, label="reply"))
        playback.enqueue(1, PlaybackItem.from_pcm(b"\x00" * 3840, label="next"))
        pipeline = _pipeline(playback, _Transcriber(), [])

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 24000))

        state = playback.get(1)
        assert state is not None
        assert not state.queue
        assert state.playing is False
        assert client.stop_calls == 1
        await pipeline.shutdown_all()

    asyncio.run(scenario())


class _StuckTranscriber(_Transcriber):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def transcribe(self, pcm_mono_48k: bytes, *, guild_id: int = 0, user_id: int = 0) -> str | None:
        self.started.set()
        await asyncio.Event().wait()
        return None


def test_shutdown_cancels_turn_still_being_transcribed() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        playback.attach(1, _FakeVoiceClient())
        transcriber = _StuckTranscriber()
        turns: list[CapturedTurn] = []
        pipeline = _pipeline(playback, transcriber, turns)

        pipeline.push_pcm(1, 42, "User42", _pcm_frames(12000, 48000))
        pipeline.speech_stopped(1, 42)
        await asyncio.wait_for(transcriber.started.wait(), timeout=2.0)

        assert pipeline.active_session(1, 42) is None
        assert pipeline.pending_turns(1) == 1

        await asyncio.wait_for(pipeline.shutdown_guild(1), timeout=2.0)
        await asyncio.sleep(0)

        assert pipeline.pending_turns(1) == 0
        state = playback.get(1)
        assert state is not None and 42 not in state.busy_speakers
        assert turns == []

    asyncio.run(scenario())
