from __future__ import annotations

import asyncio
import logging
import math
import struct

from .state import GuildVoiceState, PlaybackItem

logger = logging.getLogger("vigil_voice")

SAMPLE_RATE = 48000


def make_beep(duration_ms: int = 800, frequency: float = 440.0, amplitude: float = 0.2) -> bytes:
    frames = int(SAMPLE_RATE * duration_ms / 1000)
    peak = int(32767 * max(0.0, min(1.0, amplitude)))
    out = bytearray()
    for i in range(frames):
        sample = int(peak * math.sin(2 * math.pi * frequency * i / SAMPLE_RATE))
        out += struct.pack("<hh", sample, sample)
    return bytes(out)


class VoicePlayback:
    """One FIFO player per guild.

    All mutation happens on the event loop thread. The voice client's
    ``after`` callback runs on the audio thread, so it only schedules
    ``_on_finished`` back onto the loop; a generation counter makes
    callbacks from interrupted items no-ops.
    """

    def __init__(self) -> None:
        self._states: dict[int, GuildVoiceState] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach(
        self,
        guild_id: int,
        voice_client: object,
        *,
        text_channel_id: int | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> GuildVoiceState:
        self._loop = loop or asyncio.get_running_loop()
        state = self._states.get(guild_id)
        if state is None:
            state = GuildVoiceState(guild_id=guild_id, voice_client=voice_client, text_channel_id=text_channel_id)
            self._states[guild_id] = state
        else:
            if state.voice_client is not voice_client:
                self._reset(state)
            state.voice_client = voice_client
            if text_channel_id is not None:
                state.text_channel_id = text_channel_id
        logger.info("[voice.playback] attach guild=%s text_channel=%s", guild_id, state.text_channel_id)
        return state

    def detach(self, guild_id: int) -> None:
        state = self._states.pop(guild_id, None)
        if state is None:
            return
        self._reset(state)
        state.busy_speakers.clear()
        logger.info("[voice.playback] detach guild=%s", guild_id)

    def get(self, guild_id: int) -> GuildVoiceState | None:
        return self._states.get(guild_id)

    def guild_ids(self) -> list[int]:
        return list(self._states)

    def is_connected(self, guild_id: int) -> bool:
        state = self._states.get(guild_id)
        if state is None or state.voice_client is None:
            return False
        checker = getattr(state.voice_client, "is_connected", None)
        return bool(checker()) if callable(checker) else True

    def bind_text_channel(self, guild_id: int, text_channel_id: int | None) -> bool:
        state = self._states.get(guild_id)
        if state is None:
            return False
        state.text_channel_id = text_channel_id
        return True

    def enqueue(self, guild_id: int, item: PlaybackItem) -> bool:
        if not self.is_connected(guild_id):
            logger.info("[voice.playback] enqueue guild=%s item=%s outcome=not_connected", guild_id, item.label)
            return False
        state = self._states[guild_id]
        state.queue.append(item)
        logger.info(
            "[voice.playback] enqueue guild=%s item=%s queue=%s playing=%s",
            guild_id,
            item.label,
            len(state.queue),
            state.playing,
        )
        if not state.playing:
            self._play_next(state)
        return True

    def _play_next(self, state: GuildVoiceState) -> None:
        while state.queue:
            item = state.queue.popleft()
            generation = state.generation
            try:
                source = item.build(state.volume)
                state.voice_client.play(source, after=self._after_callback(state.guild_id, generation))
            except Exception as exc:
                logger.error("[voice.playback] play_failed guild=%s item=%s error=%s", state.guild_id, item.label, exc)
                continue
            state.playing = True
            state.current = item
            state.current_source = source
            logger.info("[voice.playback] start guild=%s item=%s remaining=%s", state.guild_id, item.label, len(state.queue))
            return
        state.playing = False
        state.current = None
        state.current_source = None

    def _after_callback(self, guild_id: int, generation: int):
        loop = self._loop

        def after_play(error: Exception | None) -> None:
            if loop is None or loop.is_closed():
                return
            loop.call_soon_threadsafe(self._on_finished, guild_id, generation, error)

        return after_play

    def _on_finished(self, guild_id: int, generation: int, error: Exception | None) -> None:
        state = self._states.get(guild_id)
        if state is None or state.generation != generation:
            return
        if error is not None:
            logger.error("[voice.playback] error guild=%s error=%s", guild_id, error)
        finished = state.current.label if state.current is not None else "-"
        logger.info("[voice.playback] finish guild=%s item=%s queue=%s", guild_id, finished, len(state.queue))
        state.playing = False
        state.current = None
        state.current_source = None
        self._play_next(state)

    def _reset(self, state: GuildVoiceState) -> int:
        dropped = len(state.queue)
        state.queue.clear()
        state.generation += 1
        was_playing = state.playing
        state.playing = False
        state.current = None
        state.current_source = None
        client = state.voice_client
        if client is not None and (was_playing or self._client_busy(client)):
            try:
                client.stop()
            except Exception as exc:
                logger.warning("[voice.playback] stop_failed guild=%s error=%s", state.guild_id, exc)
        return dropped

    @staticmethod
    def _client_busy(client: object) -> bool:
        playing = getattr(client, "is_playing", None)
        paused = getattr(client, "is_paused", None)
        return bool(callable(playing) and playing()) or bool(callable(paused) and paused())

    def interrupt(self, guild_id: int) -> bool:
        """Stop the current item and drop everything queued."""
        state = self._states.get(guild_id)
        if state is None:
            return False
        if not state.playing and not state.queue:
            return False
        dropped = self._reset(state)
        logger.info("[voice.playback] interrupt guild=%s dropped=%s", guild_id, dropped)
        return True

    def stop(self, guild_id: int) -> bool:
        state = self._states.get(guild_id)
        if state is None:
            return False
        dropped = self._reset(state)
        logger.info("[voice.playback] stop guild=%s dropped=%s", guild_id, dropped)
        return True

    def skip(self, guild_id: int) -> bool:
        state = self._states.get(guild_id)
        if state is None or not state.playing:
            return False
        logger.info("[voice.playback] skip guild=%s remaining=%s", guild_id, len(state.queue))
        # The after callback for the current generation advances the queue.
        state.voice_client.stop()
        return True

    def pause(self, guild_id: int) -> bool:
        state = self._states.get(guild_id)
        if state is None or not state.playing:
            return False
        state.voice_client.pause()
        logger.info("[voice.playback] pause guild=%s", guild_id)
        return True

    def resume(self, guild_id: int) -> bool:
        state = self._states.get(guild_id)
        if state is None or not state.playing:
            return False
        state.voice_client.resume()
        logger.info("[voice.playback] resume guild=%s", guild_id)
        return True

    def set_volume(self, guild_id: int, percent: int) -> bool:
        state = self._states.get(guild_id)
        if state is None:
            return False
        state.volume = max(0, min(100, int(percent))) / 100.0
        if state.current_source is not None and hasattr(state.current_source, "volume"):
            state.current_source.volume = state.volume
        logger.info("[voice.playback] volume guild=%s value=%.2f", guild_id, state.volume)
        return True

    async def wait_until_idle(self, guild_id: int, timeout: float = 5.0, poll_seconds: float = 0.1) -> bool:
        """Wait for the queue to drain; False if it is still busy at the deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while True:
            state = self._states.get(guild_id)
            if state is None or (not state.playing and not state.queue):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_seconds)
