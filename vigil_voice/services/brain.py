from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Protocol

import aiohttp

from ..discord.common import truncate

logger = logging.getLogger("vigil_voice")

RETRIABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


@dataclass(slots=True)
class ConversationTurn:
    role: str
    speaker: str
    text: str
    at: float


class ChatModel(Protocol):
    async def reply(self, system_prompt: str, turns: List[ConversationTurn]) -> str: ...


class GeminiChatModel:
    """generateContent over aiohttp with jittered retries on transient statuses."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        base_url: str = "https://generativelanguage.googleapis.com",
        max_output_tokens: int = 220,
        retries: int = 3,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.retries = max(1, retries)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def build_payload(system_prompt: str, turns: List[ConversationTurn]) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = []
        for turn in turns:
            text = turn.text.strip()
            if not text:
                continue
            if turn.role == "assistant":
                contents.append({"role": "model", "parts": [{"text": text}]})
            else:
                contents.append({"role": "user", "parts": [{"text": f"{turn.speaker}: {text}"}]})
        payload: Dict[str, Any] = {"contents": contents}
        if system_prompt.strip():
            payload["systemInstruction"] = {"parts": [{"text": system_prompt.strip()}]}
        return payload

    @staticmethod
    def first_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise RuntimeError(f"Gemini returned no candidates (blockReason={block_reason or '-'})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "\n".join(str(p.get("text", "")).strip() for p in parts if str(p.get("text", "")).strip())
        if not text:
            raise RuntimeError(f"Gemini empty response (finishReason={candidates[0].get('finishReason', '-')})")
        return text

    async def reply(self, system_prompt: str, turns: List[ConversationTurn]) -> str:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        payload = self.build_payload(system_prompt, turns)
        payload["generationConfig"] = {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
        }
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    body = await response.text()
                    if response.status == 200:
                        return self.first_text(json.loads(body))
                    if response.status not in RETRIABLE_STATUSES:
                        raise RuntimeError(f"Gemini error {response.status}: {body[:300]}")
                    last_error = RuntimeError(f"Gemini retriable error {response.status}")
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc

            if attempt < self.retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        raise RuntimeError(f"Gemini request failed after retries: {last_error}")


DEFAULT_SYSTEM_PROMPT = (
    "You are {name}, a friendly voice assistant hanging out in a Discord voice channel. "
    "Replies are spoken aloud, so answer in one to three short sentences with no markdown, "
    "lists, links or emoji."
)


class ConversationBrain:
    """Reply generation with a small rolling window of recent turns per channel.

    The window only lives in memory and is capped per key.
    """

    def __init__(
        self,
        model: ChatModel,
        agent_name: str = "Vi",
        window_turns: int = 12,
        system_prompt: str | None = None,
        max_reply_chars: int = 400,
    ) -> None:
        self.model = model
        self.agent_name = agent_name
        self.window_turns = max(2, int(window_turns))
        self.system_prompt = (system_prompt or DEFAULT_SYSTEM_PROMPT).format(name=agent_name)
        self.max_reply_chars = max_reply_chars
        self._history: dict[tuple[int, int], Deque[ConversationTurn]] = {}

    def history(self, guild_id: int, channel_id: int) -> list[ConversationTurn]:
        return list(self._history.get((guild_id, channel_id), ()))

    def _window(self, guild_id: int, channel_id: int) -> Deque[ConversationTurn]:
        key = (guild_id, channel_id)
        window = self._history.get(key)
        if window is None:
            window = deque(maxlen=self.window_turns)
            self._history[key] = window
        return window

    def forget(self, guild_id: int) -> None:
        for key in [k for k in self._history if k[0] == guild_id]:
            self._history.pop(key, None)

    async def respond(self, guild_id: int, channel_id: int, speaker: str, text: str) -> str:
        window = self._window(guild_id, channel_id)
        window.append(ConversationTurn(role="user", speaker=speaker, text=text, at=time.time()))
        reply = (await self.model.reply(self.system_prompt, list(window))).strip()
        reply = truncate(reply, self.max_reply_chars)
        window.append(ConversationTurn(role="assistant", speaker=self.agent_name, text=reply, at=time.time()))
        return reply

    async def close(self) -> None:
        closer = getattr(self.model, "close", None)
        if closer is not None:
            await closer()
