from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import tempfile
import time
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol

import aiohttp

try:
    import audioop
except ModuleNotFoundError:
    import audioop_lts as audioop  # type: ignore[import-not-found]

from ..discord.common import collapse_spaces

logger = logging.getLogger("vigil_voice")

SAMPLE_RATE = 48000
COMMAND_HINTS = ("play", "pause", "stop", "skip", "resume", "weather", "forecast", "volume", "say", "beep")
WAKE_BOOST = 20.0
COMMAND_BOOST = 8.0


@dataclass(frozen=True, slots=True)
class PhraseHints:
    wake: tuple[str, ...]
    commands: tuple[str, ...] = COMMAND_HINTS

    @classmethod
    def from_aliases(cls, aliases: Iterable[str]) -> "PhraseHints":
        phrases: list[str] = []
        for alias in aliases:
            for form in (alias, f"hey {alias}", f"ok {alias}", f"okay {alias}"):
                if form not in phrases:
                    phrases.append(form)
        return cls(wake=tuple(phrases))

    def prompt(self) -> str:
        aliases = ", ".join(a for a in self.wake if " " not in a)
        return f"Wake words: {aliases}. Commands include {', '.join(self.commands)}."


class SpeechToText(Protocol):
    name: str

    async def transcribe(self, pcm_mono_48k: bytes, hints: PhraseHints) -> str | None: ...


def peak_normalize(pcm: bytes, target_peak: float = 0.92, max_gain: float = 5.0) -> bytes:
    if not pcm:
        return pcm
    peak = max(1, audioop.max(pcm, 2))
    gain = min((target_peak * 32767) / peak, max_gain)
    return audioop.mul(pcm, 2, gain)


class GoogleSpeechTranscriber:
    name = "google"

    def __init__(self, api_key: str, language: str = "en-US", timeout_seconds: int = 20) -> None:
        self.api_key = api_key
        self.language = language
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _payload(self, pcm_mono_48k: bytes, hints: PhraseHints) -> dict[str, Any]:
        boosted = peak_normalize(pcm_mono_48k)
        return {
            "config": {
                "encoding": "LINEAR16",
                "sampleRateHertz": SAMPLE_RATE,
                "languageCode": self.language,
                "enableAutomaticPunctuation": True,
                "model": "latest_long",
                "speechContexts": [
                    {"phrases": list(hints.wake), "boost": WAKE_BOOST},
                    {"phrases": list(hints.commands), "boost": COMMAND_BOOST},
                ],
            },
            "audio": {"content": base64.b64encode(boosted).decode("ascii")},
        }

    async def transcribe(self, pcm_mono_48k: bytes, hints: PhraseHints) -> str | None:
        if not self.api_key:
            return None
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = f"https://speech.googleapis.com/v1/speech:recognize?key={self.api_key}"
        async with self._session.post(url, json=self._payload(pcm_mono_48k, hints)) as response:
            text = await response.text()
            if response.status != 200:
                raise RuntimeError(f"Google Speech error {response.status}: {text[:300]}")
            data = json.loads(text)

        chunks: list[str] = []
        for result in data.get("results") or []:
            alternatives = result.get("alternatives") or []
            if alternatives:
                transcript = str(alternatives[0].get("transcript", "")).strip()
                if transcript:
                    chunks.append(transcript)
        joined = " ".join(chunks).strip()
        return joined or None


class LocalWhisperTranscriber:
    name = "local_whisper"

    def __init__(
        self,
        enabled: bool,
        model: str,
        device: str,
        compute_type: str,
        language: str,
        max_audio_seconds: int = 20,
    ) -> None:
        self.enabled = enabled
        self.model_name = model.strip() or "small"
        self.device = device.strip() or "auto"
        self.compute_type = compute_type.strip() or "int8"
        self.language = language.strip() or None
        self.max_audio_seconds = max(4, int(max_audio_seconds))

        self._model: Any | None = None
        self._load_failed = False

    def _load_model_sync(self) -> Any | None:
        if self._model is not None:
            return self._model
        if self._load_failed:
            return None

        try:
            from faster_whisper import WhisperModel  # type: ignore
        except Exception:
            self._load_failed = True
            logger.exception("Local STT failed to import faster_whisper")
            return None

        try:
            self._model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type,
            )
        except Exception:
            self._load_failed = True
            logger.exception(
                "Local STT failed to load model model=%s device=%s compute=%s",
                self.model_name,
                self.device,
                self.compute_type,
            )
            return None
        return self._model

    def _prepare_wav(self, pcm_mono_48k: bytes) -> Path:
        max_bytes = SAMPLE_RATE * 2 * self.max_audio_seconds
        if len(pcm_mono_48k) > max_bytes:
            pcm_mono_48k = pcm_mono_48k[-max_bytes:]
        mono_16k, _ = audioop.ratecv(pcm_mono_48k, 2, 1, SAMPLE_RATE, 16000, None)

        with tempfile.NamedTemporaryFile(prefix="vigil_stt_", suffix=".wav", delete=False) as tmp:
            raw_path = tmp.name
        with wave.open(raw_path, "wb") as writer:
            writer.setnchannels(1)
            writer.setsampwidth(2)
            writer.setframerate(16000)
            writer.writeframes(mono_16k)
        return Path(raw_path)

    def _transcribe_sync(self, pcm_mono_48k: bytes, hints: PhraseHints) -> str | None:
        model = self._load_model_sync()
        if model is None:
            return None
        wav_path = self._prepare_wav(pcm_mono_48k)
        try:
            segments, _ = model.transcribe(
                str(wav_path),
                language=self.language,
                beam_size=4,
                temperature=0.0,
                vad_filter=True,
                condition_on_previous_text=False,
                initial_prompt=hints.prompt(),
                hotwords=" ".join(hints.wake + hints.commands),
            )
            chunks = [" ".join(str(getattr(seg, "text", "")).split()) for seg in segments]
            text = " ".join(chunk for chunk in chunks if chunk).strip()
            return text or None
        finally:
            with contextlib.suppress(OSError):
                wav_path.unlink()

    async def transcribe(self, pcm_mono_48k: bytes, hints: PhraseHints) -> str | None:
        if not self.enabled or not pcm_mono_48k:
            return None
        return await asyncio.to_thread(self._transcribe_sync, pcm_mono_48k, hints)


class TranscriptionGateway:
    """Primary provider first, secondary on failure or empty text; None when both miss."""

    def __init__(
        self,
        providers: Iterable[SpeechToText],
        hints: PhraseHints,
        timeout_seconds: float = 20.0,
    ) -> None:
        self.providers = [p for p in providers if p is not None]
        self.hints = hints
        self.timeout_seconds = timeout_seconds

    async def transcribe(self, pcm_mono_48k: bytes, *, guild_id: int = 0, user_id: int = 0) -> str | None:
        if not pcm_mono_48k:
            return None
        for provider in self.providers:
            started = time.perf_counter()
            try:
                raw = await asyncio.wait_for(
                    provider.transcribe(pcm_mono_48k, self.hints),
                    timeout=self.timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    "[voice.stt] provider=%s guild=%s user=%s outcome=timeout",
                    provider.name,
                    guild_id,
                    user_id,
                )
                continue
            except Exception as exc:
                logger.warning(
                    "[voice.stt] provider=%s guild=%s user=%s outcome=error error=%s",
                    provider.name,
                    guild_id,
                    user_id,
                    exc,
                )
                continue

            text = collapse_spaces(raw or "")
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            if text:
                logger.info(
                    "[voice.stt] provider=%s guild=%s user=%s outcome=ok chars=%s ms=%s",
                    provider.name,
                    guild_id,
                    user_id,
                    len(text),
                    elapsed_ms,
                )
                return text
            logger.info(
                "[voice.stt] provider=%s guild=%s user=%s outcome=empty ms=%s",
                provider.name,
                guild_id,
                user_id,
                elapsed_ms,
            )
        return None

    async def close(self) -> None:
        for provider in self.providers:
            closer = getattr(provider, "close", None)
            if closer is not None:
                with contextlib.suppress(Exception):
                    await closer()
