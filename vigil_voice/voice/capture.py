from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

try:
    import audioop
except ModuleNotFoundError:
    import audioop_lts as audioop  # type: ignore[import-not-found]

from .playback import VoicePlayback

logger = logging.getLogger("vigil_voice")

SAMPLE_RATE = 48000
STEREO_FRAME_BYTES = 4
MONO_FRAME_BYTES = 2


def downmix_stereo_to_mono(pcm_48k_stereo: bytes) -> bytes:
    """Average left and right per sample; audioop clamps to the int16 range."""
    usable = len(pcm_48k_stereo) - (len(pcm_48k_stereo) % STEREO_FRAME_BYTES)
    if usable <= 0:
        return b""
    return audioop.tomono(pcm_48k_stereo[:usable], 2, 0.5, 0.5)


def mono_duration_ms(pcm_mono: bytes) -> int:
    return int(len(pcm_mono) * 1000 / (SAMPLE_RATE * MONO_FRAME_BYTES))


def frame_rms(pcm: bytes) -> int:
    try:
        return int(audioop.rms(pcm, 2))
    except audioop.error:
        return 0


class Transcriber(Protocol):
    async def transcribe(self, pcm_mono_48k: bytes, *, guild_id: int = 0, user_id: int = 0) -> str | None: ...


@dataclass(slots=True)
class CapturedTurn:
    guild_id: int
    user_id: int
    user_label: str
    text: str
    duration_ms: int


@dataclass(slots=True)
class CaptureSession:
    guild_id: int
    user_id: int
    user_label: str
    started_at: float
    frames: asyncio.Queue[bytes | None] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None


class CapturePipeline:
    """Per-speaker capture: loud frame starts it, silence or the hard cap ends it.

    ``push_pcm`` and ``speech_stopped`` must be called on the event loop
    thread (the voice sink hops over with ``call_soon_threadsafe``).
    """

    def __init__(
        self,
        playback: VoicePlayback,
        transcriber: Transcriber,
        on_transcript: Callable[[CapturedTurn], Awaitable[object]],
        *,
        silence_rms: int = 95,
        silence_ms: int = 800,
        min_turn_ms: int = 500,
        max_turn_seconds: float = 20.0,
        interrupt_on_speech: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.playback = playback
        self.transcriber = transcriber
        self.on_transcript = on_transcript
        self.silence_rms = silence_rms
        self.silence_seconds = max(0.01, silence_ms / 1000.0)
        self.min_turn_ms = min_turn_ms
        self.max_turn_seconds = max(0.05, float(max_turn_seconds))
        self.interrupt_on_speech = interrupt_on_speech
        self._clock = clock
        self._sessions: dict[tuple[int, int], CaptureSession] = {}
        # Turns still collecting, transcribing or routing, per guild.
        self._turns: dict[int, set[asyncio.Task[None]]] = {}

    def active_session(self, guild_id: int, user_id: int) -> CaptureSession | None:
        return self._sessions.get((guild_id, user_id))

    def pending_turns(self, guild_id: int) -> int:
        return len(self._turns.get(guild_id, ()))

    def push_pcm(self, guild_id: int, user_id: int, user_label: str, pcm_48k_stereo: bytes) -> None:
        if not pcm_48k_stereo:
            return
        key = (guild_id, user_id)
        session = self._sessions.get(key)
        if session is not None:
            session.frames.put_nowait(pcm_48k_stereo)
            return

        state = self.playback.get(guild_id)
        if state is None:
            return
        if frame_rms(pcm_48k_stereo) < self.silence_rms:
            return
        if user_id in state.busy_speakers:
            return

        state.busy_speakers.add(user_id)
        if self.interrupt_on_speech:
            self.playback.interrupt(guild_id)

        session = CaptureSession(
            guild_id=guild_id,
            user_id=user_id,
            user_label=user_label,
            started_at=self._clock(),
        )
        session.frames.put_nowait(pcm_48k_stereo)
        self._sessions[key] = session
        session.task = asyncio.create_task(self._run(session), name=f"voice-capture-{guild_id}-{user_id}")
        self._turns.setdefault(guild_id, set()).add(session.task)
        session.task.add_done_callback(lambda task: self._forget_turn(guild_id, task))
        logger.info("[voice.capture] start guild=%s user=%s label=%s", guild_id, user_id, user_label)

    def speech_stopped(self, guild_id: int, user_id: int) -> None:
        session = self._sessions.get((guild_id, user_id))
        if session is not None:
            session.frames.put_nowait(None)

    async def _collect(self, session: CaptureSession) -> tuple[bytes, str]:
        buffer = bytearray()
        deadline = session.started_at + self.max_turn_seconds
        last_voice_at = session.started_at
        while True:
            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                return bytes(buffer), "max_duration"
            try:
                frame = await asyncio.wait_for(
                    session.frames.get(),
                    timeout=min(self.silence_seconds, remaining),
                )
            except asyncio.TimeoutError:
                if self._clock() >= deadline:
                    return bytes(buffer), "max_duration"
                return bytes(buffer), "silence"
            if frame is None:
                return bytes(buffer), "speech_end"
            buffer.extend(frame)
            now = self._clock()
            if frame_rms(frame) >= self.silence_rms:
                last_voice_at = now
            elif now - last_voice_at >= self.silence_seconds:
                return bytes(buffer), "silence"

    async def _run(self, session: CaptureSession) -> None:
        key = (session.guild_id, session.user_id)
        try:
            stereo, end_reason = await self._collect(session)
            if self._sessions.get(key) is session:
                self._sessions.pop(key, None)

            mono = downmix_stereo_to_mono(stereo)
            duration_ms = mono_duration_ms(mono)
            if duration_ms < self.min_turn_ms:
                logger.info(
                    "[voice.capture] discard guild=%s user=%s reason=too_short duration_ms=%s end=%s",
                    session.guild_id,
                    session.user_id,
                    duration_ms,
                    end_reason,
                )
                return
            logger.info(
                "[voice.capture] end guild=%s user=%s duration_ms=%s end=%s",
                session.guild_id,
                session.user_id,
                duration_ms,
                end_reason,
            )

            text = await self.transcriber.transcribe(mono, guild_id=session.guild_id, user_id=session.user_id)
            if not text:
                logger.info("[voice.capture] drop guild=%s user=%s reason=no_transcript", session.guild_id, session.user_id)
                return

            await self.on_transcript(
                CapturedTurn(
                    guild_id=session.guild_id,
                    user_id=session.user_id,
                    user_label=session.user_label,
                    text=text,
                    duration_ms=duration_ms,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[voice.capture] failed guild=%s user=%s", session.guild_id, session.user_id)
        finally:
            if self._sessions.get(key) is session:
                self._sessions.pop(key, None)
            state = self.playback.get(session.guild_id)
            if state is not None:
                state.busy_speakers.discard(session.user_id)

    def _forget_turn(self, guild_id: int, task: asyncio.Task[None]) -> None:
        tasks = self._turns.get(guild_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            self._turns.pop(guild_id, None)

    async def shutdown_guild(self, guild_id: int) -> None:
        await self._cancel_tasks(list(self._turns.get(guild_id, ())))

    async def shutdown_all(self) -> None:
        await self._cancel_tasks([task for tasks in list(self._turns.values()) for task in tasks])

    async def _cancel_tasks(self, tasks: list[asyncio.Task[None]]) -> None:
        for task in tasks:
            if task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
