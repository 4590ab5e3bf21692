from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

pytest.importorskip("discord")

from vigil_voice.voice.playback import VoicePlayback, make_beep  # noqa: E402
from vigil_voice.voice.state import PlaybackItem  # noqa: E402


class _FakeVoiceClient:
    def __init__(self) -> None:
        self.played: list[object] = []
        self.afters: list[object] = []
        self.stop_calls = 0
        self.paused = False
        self._playing = False

    def is_connected(self) -> bool:
        return True

    def is_playing(self) -> bool:
        return self._playing

    def is_paused(self) -> bool:
        return self.paused

    def play(self, source: object, *, after: object) -> None:
        self.played.append(source)
        self.afters.append(after)
        self._playing = True

    def stop(self) -> None:
        self.stop_calls += 1
        self._playing = False

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def finish_current(self) -> None:
        self._playing = False
        self.afters[-1](None)


def _item(label: str) -> PlaybackItem:
    return PlaybackItem.from_pcm(b"\x00\x00\x00\x00" * 960, label=label)


def test_enqueue_without_connection_reports_not_connected() -> None:
    playback = VoicePlayback()

    assert playback.enqueue(1, _item("a")) is False
    assert playback.is_connected(1) is False


def test_fifo_plays_first_item_to_completion_before_second() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)

        assert playback.enqueue(1, _item("a"))
        assert playback.enqueue(1, _item("b"))
        state = playback.get(1)
        assert state is not None
        assert state.current is not None and state.current.label == "a"
        assert len(client.played) == 1

        client.finish_current()
        await asyncio.sleep(0)
        assert state.current is not None and state.current.label == "b"
        assert len(client.played) == 2

        client.finish_current()
        await asyncio.sleep(0)
        assert state.playing is False
        assert state.current is None

    asyncio.run(scenario())


def test_interrupt_empties_queue_and_ignores_stale_callback() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)
        playback.enqueue(1, _item("a"))
        playback.enqueue(1, _item("b"))
        stale_after = client.afters[-1]

        assert playback.interrupt(1) is True
        state = playback.get(1)
        assert state is not None
        assert not state.queue
        assert state.playing is False
        assert client.stop_calls == 1

        stale_after(None)
        await asyncio.sleep(0)
        assert len(client.played) == 1
        assert state.playing is False

        assert playback.interrupt(1) is False

    asyncio.run(scenario())


def test_skip_advances_through_after_callback() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)
        playback.enqueue(1, _item("a"))
        playback.enqueue(1, _item("b"))

        assert playback.skip(1) is True
        client.finish_current()
        await asyncio.sleep(0)

        state = playback.get(1)
        assert state is not None and state.current is not None
        assert state.current.label == "b"

    asyncio.run(scenario())


def test_pause_resume_and_volume() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)

        assert playback.pause(1) is False
        playback.enqueue(1, _item("a"))
        assert playback.pause(1) is True and client.paused
        assert playback.resume(1) is True and not client.paused

        assert playback.set_volume(1, 150) is True
        state = playback.get(1)
        assert state is not None
        assert state.volume == 1.0
        playback.set_volume(1, 40)
        assert state.current_source.volume == pytest.approx(0.4)

    asyncio.run(scenario())


def test_detach_clears_state() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client, text_channel_id=77)
        playback.enqueue(1, _item("a"))

        playback.detach(1)

        assert playback.get(1) is None
        assert client.stop_calls == 1
        assert playback.enqueue(1, _item("b")) is False

    asyncio.run(scenario())


def test_beep_is_stereo_48k_and_bounded() -> None:
    pcm = make_beep(duration_ms=800)

    assert len(pcm) == 48000 * 4 * 8 // 10
    assert max(abs(int.from_bytes(pcm[i : i + 2], "little", signed=True)) for i in range(0, 4000, 2)) <= 32767


def test_wait_until_idle_returns_once_queue_drains() -> None:
    async def scenario() -> None:
        playback = VoicePlayback()
        client = _FakeVoiceClient()
        playback.attach(1, client)
        playback.enqueue(1, _item("goodbye"))

        assert await playback.wait_until_idle(1, timeout=0.05, poll_seconds=0.01) is False

        waiter = asyncio.create_task(playback.wait_until_idle(1, timeout=2.0, poll_seconds=0.01))
        await asyncio.sleep(0)
        client.finish_current()
        assert await waiter is True
        assert await playback.wait_until_idle(99) is True

    asyncio.run(scenario())
