from __future__ import annotations

import asyncio
import contextlib
import logging

import discord

from ..config import Settings
from ..moderation.engine import ModerationEngine
from ..services.brain import ConversationBrain
from ..services.synthesis import SynthesisGateway
from ..services.transcription import TranscriptionGateway
from ..services.weather import WeatherClient
from ..voice.capture import CapturedTurn, CapturePipeline
from ..voice.playback import VoicePlayback
from ..voice.router import IntentRouter
from ..voice.session import SessionTracker
from ..voice.wake import WakeDetector
from .mixins.message_mixin import MessageMixin
from .mixins.voice_mixin import VoiceMixin
from .voice_integration import VOICE_RECV_AVAILABLE, install_voice_recv_decode_guard, voice_recv

logger = logging.getLogger("vigil_voice")


class VigilVoiceBot(
    MessageMixin,
    VoiceMixin,
    discord.Client,
):
    def __init__(
        self,
        settings: Settings,
        transcription: TranscriptionGateway,
        synthesis: SynthesisGateway,
        brain: ConversationBrain,
        weather: WeatherClient,
        moderation: ModerationEngine | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.members = settings.discord_members_intent
        intents.voice_states = True

        super().__init__(intents=intents)

        self.settings = settings
        self.transcription = transcription
        self.synthesis = synthesis
        self.brain = brain
        self.weather = weather
        self.moderation = moderation or ModerationEngine(settings)

        self.playback = VoicePlayback()
        self.wake = WakeDetector(settings)
        self.sessions = SessionTracker(settings.wake_session_seconds)
        self.router = IntentRouter(
            wake=self.wake,
            sessions=self.sessions,
            playback=self.playback,
            synthesis=synthesis,
            brain=brain,
            moderation=self.moderation,
            guild_lookup=self.get_guild,
            weather=weather,
            leave=self.leave_voice,
            post_status=self.post_status,
            ffmpeg_path=settings.ffmpeg_path,
            reprompt_ms=settings.wake_reprompt_ms,
        )
        self.capture = CapturePipeline(
            self.playback,
            transcription,
            self._on_voice_turn,
            silence_rms=settings.voice_silence_rms,
            silence_ms=settings.voice_silence_ms,
            min_turn_ms=settings.voice_min_turn_ms,
            max_turn_seconds=settings.voice_max_turn_seconds,
            interrupt_on_speech=settings.voice_interrupt_on_speech,
        )
        install_voice_recv_decode_guard()

        self._loop: asyncio.AbstractEventLoop | None = None

    async def _on_voice_turn(self, turn: CapturedTurn) -> None:
        await self.router.handle_transcript(turn)

    async def setup_hook(self) -> None:
        self._loop = asyncio.get_running_loop()

    async def close(self) -> None:
        await self._run_shutdown_step("disconnect_voice_clients", self._disconnect_voice_clients(), timeout=6.0)
        await self._run_shutdown_step("capture.shutdown_all", self.capture.shutdown_all(), timeout=3.0)
        for guild_id in self.playback.guild_ids():
            self.playback.detach(guild_id)

        await self._run_shutdown_step("transcription.close", self.transcription.close(), timeout=6.0)
        await self._run_shutdown_step("synthesis.close", self.synthesis.close(), timeout=6.0)
        await self._run_shutdown_step("brain.close", self.brain.close(), timeout=6.0)
        await self._run_shutdown_step("weather.close", self.weather.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("[shutdown] step timed out: %s", label)
        except Exception as exc:
            logger.warning("[shutdown] step failed: %s (%s)", label, exc)

    async def _disconnect_voice_clients(self) -> None:
        for guild in list(self.guilds):
            vc = guild.voice_client
            if vc is None:
                continue
            if VOICE_RECV_AVAILABLE and voice_recv is not None:
                with contextlib.suppress(Exception):
                    if isinstance(vc, voice_recv.VoiceRecvClient) and vc.is_listening():
                        vc.stop_listening()
            with contextlib.suppress(Exception):
                await asyncio.wait_for(vc.disconnect(force=True), timeout=4.0)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)
