from __future__ import annotations

import asyncio
import contextlib
import logging

from .config import Settings
from .discord.client import VigilVoiceBot
from .moderation.engine import ModerationEngine
from .services.brain import ConversationBrain, GeminiChatModel
from .services.synthesis import EdgeSpeechProvider, ElevenLabsSpeechProvider, SpeechProvider, SynthesisGateway
from .services.transcription import GoogleSpeechTranscriber, LocalWhisperTranscriber, PhraseHints, TranscriptionGateway
from .services.weather import WeatherClient

logger = logging.getLogger("vigil_voice")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.ext.voice_recv.reader").setLevel(logging.WARNING)
    logging.getLogger("discord.ext.voice_recv.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.ext.voice_recv.opus").setLevel(logging.ERROR)
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)


def build_transcription(settings: Settings) -> TranscriptionGateway:
    providers = []
    if settings.google_speech_api_key:
        providers.append(
            GoogleSpeechTranscriber(
                api_key=settings.google_speech_api_key,
                language=settings.google_speech_language,
                timeout_seconds=settings.transcription_timeout_seconds,
            )
        )
    if settings.local_stt_enabled:
        providers.append(
            LocalWhisperTranscriber(
                enabled=True,
                model=settings.local_stt_model,
                device=settings.local_stt_device,
                compute_type=settings.local_stt_compute_type,
                language=settings.local_stt_language,
                max_audio_seconds=settings.voice_max_turn_seconds,
            )
        )
    return TranscriptionGateway(
        providers,
        PhraseHints.from_aliases(settings.wake_aliases),
        timeout_seconds=settings.transcription_timeout_seconds,
    )


def build_synthesis(settings: Settings) -> SynthesisGateway:
    provider: SpeechProvider
    if settings.tts_provider == "edge":
        provider = EdgeSpeechProvider(voice_id=settings.edge_tts_voice)
    else:
        provider = ElevenLabsSpeechProvider(
            api_key=settings.elevenlabs_api_key,
            voice_id=settings.elevenlabs_voice_id,
        )
    return SynthesisGateway(
        provider,
        ffmpeg_path=settings.ffmpeg_path,
        max_attempts=settings.tts_max_attempts,
        backoff_seconds=settings.tts_backoff_seconds,
        cache_size=settings.tts_cache_size,
    )


def build_bot(settings: Settings) -> VigilVoiceBot:
    model = GeminiChatModel(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        timeout_seconds=settings.gemini_timeout_seconds,
        temperature=settings.gemini_temperature,
        base_url=settings.gemini_base_url,
    )
    brain = ConversationBrain(
        model,
        agent_name=settings.agent_name,
        window_turns=settings.conversation_window_turns,
    )
    return VigilVoiceBot(
        settings=settings,
        transcription=build_transcription(settings),
        synthesis=build_synthesis(settings),
        brain=brain,
        weather=WeatherClient(),
        moderation=ModerationEngine(settings),
    )


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
