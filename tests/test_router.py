from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

pytest.importorskip("discord")

from vigil_voice.moderation.engine import ModerationOutcome  # noqa: E402
from vigil_voice.voice.capture import CapturedTurn  # noqa: E402
from vigil_voice.voice.commands import LEAVING_REPLY, NOTHING_PLAYING_REPLY  # noqa: E402
from vigil_voice.voice.router import ASK_CITY_REPLY, LISTENING_REPLY, IntentRouter  # noqa: E402
from vigil_voice.voice.session import SessionTracker  # noqa: E402
from vigil_voice.voice.wake import WakeDetector, WakeProfile  # noqa: E402


class _Playback:
    def __init__(self, connected: bool = True, active: bool = True) -> None:
        self.connected = connected
        self.active = active
        self.items: list[object] = []
        self.paused = False
        self.volume: int | None = None
        self.drained: list[int] = []

    def is_connected(self, guild_id: int) -> bool:
        return self.connected

    def enqueue(self, guild_id: int, item: object) -> bool:
        if not self.connected:
            return False
        self.items.append(item)
        return True

    def get(self, guild_id: int) -> object:
        return SimpleNamespace(text_channel_id=55)

    def pause(self, guild_id: int) -> bool:
        self.paused = self.active
        return self.active

    def resume(self, guild_id: int) -> bool:
        return self.active

    def skip(self, guild_id: int) -> bool:
        return self.active

    def stop(self, guild_id: int) -> bool:
        return self.active

    def set_volume(self, guild_id: int, percent: int) -> bool:
        self.volume = percent
        return True

    async def wait_until_idle(self, guild_id: int, timeout: float = 5.0) -> bool:
        self.drained.append(guild_id)
        return True


class _Synthesis:
    def __init__(self) -> None:
        self.spoken: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.spoken.append(text)
        return b"\x00\x00\x00\x00" * 10


class _Brain:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int, str, str]] = []

    async def respond(self, guild_id: int, channel_id: int, speaker: str, text: str) -> str:
        self.calls.append((guild_id, channel_id, speaker, text))
        return "Doing great, thanks."


class _Weather:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def spoken_report(self, place: str, when: str = "now") -> str:
        self.calls.append((place, when))
        return f"{place}: clear sky, 20 degrees."


class _Moderation:
    def __init__(self, outcome: ModerationOutcome) -> None:
        self.outcome = outcome
        self.calls: list[dict[str, object]] = []

    async def scan_and_act(self, guild: object, user_id: int, text: str, **kwargs: object) -> ModerationOutcome:
        self.calls.append({"user_id": user_id, "text": text, **kwargs})
        return self.outcome


class _Clock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


def _router(**overrides: object) -> IntentRouter:
    options: dict[str, object] = {
        "wake": WakeDetector(default_profile=WakeProfile(aliases=("vi", "vee"))),
        "sessions": SessionTracker(window_seconds=15, clock=_Clock()),
        "playback": _Playback(),
        "synthesis": _Synthesis(),
        "brain": _Brain(),
        "weather": _Weather(),
    }
    options.update(overrides)
    return IntentRouter(**options)  # type: ignore[arg-type]


def _turn(text: str, user_id: int = 2) -> CapturedTurn:
    return CapturedTurn(guild_id=1, user_id=user_id, user_label="Sam", text=text, duration_ms=900)


def test_not_connected_is_explicit() -> None:
    router = _router(playback=_Playback(connected=False))

    result = asyncio.run(router.handle_transcript(_turn("vee beep")))

    assert result.outcome == "not_connected"


def test_wake_miss_is_dropped_silently() -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn("completely unrelated sentence")))

    assert result.outcome == "dropped"
    assert router.synthesis.spoken == []
    assert router.brain.calls == []


def test_bare_wake_opens_session_and_acknowledges() -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn("hey vee")))

    assert result.outcome == "listening"
    assert router.synthesis.spoken == [LISTENING_REPLY]
    assert router.sessions.is_active(1, 2)


def test_fast_path_command_runs_before_chat() -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn("vee beep")))

    assert result.outcome == "command"
    assert result.detail == "beep:queued"
    assert [item.label for item in router.playback.items] == ["beep"]
    assert router.brain.calls == []


def test_session_follow_up_needs_no_alias() -> None:
    router = _router()

    async def scenario() -> None:
        await router.handle_transcript(_turn("vee"))
        result = await router.handle_transcript(_turn("pause"))
        assert result.outcome == "command"

    asyncio.run(scenario())
    assert router.playback.paused is True


def test_missing_city_is_asked_then_filled_from_next_turn() -> None:
    router = _router()

    async def scenario() -> None:
        asked = await router.handle_transcript(_turn("vee what's the weather tomorrow"))
        assert asked.outcome == "slot"
        assert asked.detail == "asked_location"
        filled = await router.handle_transcript(_turn("Lisbon."))
        assert filled.outcome == "slot"

    asyncio.run(scenario())
    assert router.synthesis.spoken[0] == ASK_CITY_REPLY
    assert router.commands.weather_client.calls == [("Lisbon", "tomorrow")]
    assert router.sessions.get_awaiting(1, 2) is None
    assert router.commands.remembered_city(1, 2) == "Lisbon"


def test_conversational_fallback_speaks_reply() -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn("hey vee how are you doing")))

    assert result.outcome == "chat"
    assert router.brain.calls == [(1, 55, "Sam", "how are you doing")]
    assert router.synthesis.spoken == ["Doing great, thanks."]
    assert len(router.playback.items) == 1


def test_hard_violation_drops_turn_before_routing() -> None:
    moderation = _Moderation(ModerationOutcome(violated=True, reason="threat", strikes=3))
    guild = SimpleNamespace(voice_client=SimpleNamespace(channel=SimpleNamespace(id=9)))
    router = _router(moderation=moderation, guild_lookup=lambda guild_id: guild)

    result = asyncio.run(router.handle_transcript(_turn("vee I will hurt you at school")))

    assert result.outcome == "moderated"
    assert router.brain.calls == []
    call = moderation.calls[0]
    assert call["source"] == "voice"
    assert call["channel_id"] == 9
    assert call["addressed_to_bot"] is True


def test_unaddressed_speech_is_still_moderated() -> None:
    moderation = _Moderation(ModerationOutcome(violated=False))
    guild = SimpleNamespace(voice_client=None)
    router = _router(moderation=moderation, guild_lookup=lambda guild_id: guild)

    result = asyncio.run(router.handle_transcript(_turn("just chatting with friends")))

    assert result.outcome == "dropped"
    assert moderation.calls[0]["addressed_to_bot"] is False


def test_soft_violation_does_not_block_reply() -> None:
    moderation = _Moderation(ModerationOutcome(violated=True, reason="harassment (soft)", soft=True))
    router = _router(moderation=moderation, guild_lookup=lambda guild_id: SimpleNamespace(voice_client=None))

    result = asyncio.run(router.handle_transcript(_turn("vee how are you doing")))

    assert result.outcome == "chat"


def test_play_keeps_the_spoken_path_intact(tmp_path: Path) -> None:
    track = tmp_path / "Song One.mp3"
    track.write_bytes(b"ID3")
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn(f"vi, play {track}")))

    assert result.outcome == "command"
    assert result.detail == "music_play:queued"
    assert [item.label for item in router.playback.items][-1] == "music:Song One.mp3"
    assert router.synthesis.spoken == ["Playing Song One.mp3"]


def test_say_repeats_original_casing_and_punctuation() -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn("Vee, say Hello There, Sam!")))

    assert result.detail == "say:spoken"
    assert router.synthesis.spoken == ["Hello There, Sam!"]


@pytest.mark.parametrize(
    ("phrase", "detail", "spoken"),
    [
        ("vee pause", "music_pause:paused", "Paused."),
        ("vee resume", "music_resume:resumed", "Resumed."),
        ("vee skip", "music_skip:skipped", "Skipped."),
        ("vee stop", "music_stop:stopped", "Stopped and cleared the queue."),
        ("vee volume 40", "music_volume:volume_set", "Volume set to 40%."),
    ],
)
def test_music_controls_are_confirmed_out_loud(phrase: str, detail: str, spoken: str) -> None:
    router = _router()

    result = asyncio.run(router.handle_transcript(_turn(phrase)))

    assert result.outcome == "command"
    assert result.detail == detail
    assert router.synthesis.spoken == [spoken]


def test_music_control_with_nothing_playing_says_so() -> None:
    router = _router(playback=_Playback(active=False))

    result = asyncio.run(router.handle_transcript(_turn("vee skip")))

    assert result.detail == "music_skip:idle"
    assert router.synthesis.spoken == [NOTHING_PLAYING_REPLY]


def test_pause_is_also_posted_to_the_status_channel() -> None:
    posted: list[tuple[int, str]] = []

    async def post_status(guild_id: int, text: str) -> bool:
        posted.append((guild_id, text))
        return True

    router = _router(post_status=post_status)

    asyncio.run(router.handle_transcript(_turn("vee pause")))

    assert posted == [(1, "Paused by Sam.")]


def test_leave_says_goodbye_before_disconnecting() -> None:
    events: list[str] = []

    async def leave(guild_id: int) -> bool:
        events.append(f"spoken={list(router.synthesis.spoken)} drained={router.playback.drained}")
        return True

    router = _router(leave=leave)

    result = asyncio.run(router.handle_transcript(_turn("vee leave")))

    assert result.detail == "leave:left"
    assert events == [f"spoken={[LEAVING_REPLY]} drained=[1]"]


def test_debounced_location_prompt_reports_no_reply() -> None:
    router = _router()

    async def scenario() -> None:
        first = await router.handle_transcript(_turn("vee what's the weather"))
        router.sessions.set_awaiting(1, 2, None)
        second = await router.handle_transcript(_turn("vee what's the weather"))
        assert first.reply == ASK_CITY_REPLY
        assert second.detail == "asked_location"
        assert second.reply is None

    asyncio.run(scenario())
    assert router.synthesis.spoken == [ASK_CITY_REPLY]
