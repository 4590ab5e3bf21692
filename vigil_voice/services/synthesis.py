from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Protocol

import aiohttp
import edge_tts

logger = logging.getLogger("vigil_voice")


class SpeechProvider(Protocol):
    name: str
    voice_id: str

    async def fetch(self, text: str) -> bytes: ...


class ElevenLabsSpeechProvider:
    name = "elevenlabs"

    def __init__(self, api_key: str, voice_id: str, timeout_seconds: int = 20) -> None:
        self.api_key = api_key
        self.voice_id = voice_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch(self, text: str) -> bytes:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = f"https://api.elevenlabs.io/v1/text-to-speech/{self.voice_id}"
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        async with self._session.post(url, json={"text": text}, headers=headers) as response:
            if response.status != 200:
                body = await response.text()
                raise RuntimeError(f"ElevenLabs error {response.status}: {body[:300]}")
            return await response.read()


class EdgeSpeechProvider:
    name = "edge"

    def __init__(self, voice_id: str, rate: str = "+0%") -> None:
        self.voice_id = voice_id
        self.rate = rate

    async def fetch(self, text: str) -> bytes:
        communicate = edge_tts.Communicate(text=text, voice=self.voice_id, rate=self.rate)
        audio = bytearray()
        async for chunk in communicate.stream():
            if chunk.get("type") == "audio":
                audio.extend(chunk.get("data") or b"")
        if not audio:
            raise RuntimeError("edge-tts returned no audio")
        return bytes(audio)


async def ffmpeg_to_pcm48k_stereo(
    payload: bytes,
    ffmpeg_path: str = "ffmpeg",
    timeout_seconds: float = 20.0,
) -> bytes:
    """Transcode any compressed audio payload to raw s16le 48 kHz stereo."""
    process = await asyncio.create_subprocess_exec(
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        "pipe:0",
        "-f",
        "s16le",
        "-ar",
        "48000",
        "-ac",
        "2",
        "pipe:1",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise RuntimeError(f"ffmpeg timed out after {timeout_seconds:.0f}s") from exc
    finally:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[:300]
        raise RuntimeError(f"ffmpeg exited with code {process.returncode}: {detail}")
    return stdout


Transcoder = Callable[[bytes], Awaitable[bytes]]


class SynthesisGateway:
    def __init__(
        self,
        provider: SpeechProvider,
        *,
        ffmpeg_path: str = "ffmpeg",
        max_attempts: int = 3,
        backoff_seconds: float = 0.3,
        cache_size: int = 256,
        transcoder: Transcoder | None = None,
    ) -> None:
        self.provider = provider
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.cache_size = max(0, int(cache_size))
        self._cache: OrderedDict[tuple[str, str], bytes] = OrderedDict()
        if transcoder is None:

            async def transcoder(payload: bytes) -> bytes:
                return await ffmpeg_to_pcm48k_stereo(payload, ffmpeg_path)

        self._transcode = transcoder

    def _remember(self, key: tuple[str, str], pcm: bytes) -> None:
        if self.cache_size <= 0:
            return
        self._cache[key] = pcm
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def synthesize(self, text: str) -> bytes | None:
        cleaned = " ".join((text or "").split())
        if not cleaned:
            return None
        key = (self.provider.voice_id, cleaned)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        for attempt in range(1, self.max_attempts + 1):
            try:
                payload = await self.provider.fetch(cleaned)
                pcm = await self._transcode(payload)
                if not pcm:
                    raise RuntimeError("transcoder produced no audio")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "[voice.tts] provider=%s attempt=%s/%s outcome=error error=%s retry_in=%.2fs",
                    self.provider.name,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(delay)
                continue

            self._remember(key, pcm)
            logger.info(
                "[voice.tts] provider=%s outcome=ok chars=%s pcm_bytes=%s",
                self.provider.name,
                len(cleaned),
                len(pcm),
            )
            return pcm

        logger.error("[voice.tts] provider=%s outcome=failed attempts=%s", self.provider.name, self.max_attempts)
        return None

    async def close(self) -> None:
        closer = getattr(self.provider, "close", None)
        if closer is not None:
            await closer()
