from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict

import discord

from ..services.weather import WeatherClient
from .intents import VoiceIntent
from .playback import VoicePlayback, make_beep
from .state import PlaybackItem

logger = logging.getLogger("vigil_voice")

Speak = Callable[[int, str], Awaitable[bool]]
Leave = Callable[[int], Awaitable[object]]
PostStatus = Callable[[int, str], Awaitable[object]]

NOTHING_PLAYING_REPLY = "Nothing is playing."
LEAVING_REPLY = "Leaving the voice channel."
LEAVE_DRAIN_SECONDS = 5.0


@dataclass(slots=True)
class CommandContext:
    guild_id: int
    user_id: int
    user_label: str


def is_playable_target(query: str) -> bool:
    lowered = query.lower()
    if lowered.startswith(("http://", "https://")):
        return True
    try:
        return Path(query).expanduser().is_file()
    except OSError:
        return False


class VoiceCommandHandlers:
    """Routing table from recognized voice intents to their handlers."""

    def __init__(
        self,
        playback: VoicePlayback,
        speak: Speak,
        *,
        weather: WeatherClient | None = None,
        leave: Leave | None = None,
        post_status: PostStatus | None = None,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        self.playback = playback
        self.speak = speak
        self.weather_client = weather
        self.leave_voice = leave
        self.post_status = post_status
        self.ffmpeg_path = ffmpeg_path
        self._last_city: dict[tuple[int, int], str] = {}
        self._routes: Dict[str, Callable[[CommandContext, VoiceIntent], Awaitable[str]]] = {
            "say": self._say,
            "beep": self._beep,
            "leave": self._leave,
            "weather": self._weather,
            "music_play": self._music_play,
            "music_pause": self._music_pause,
            "music_resume": self._music_resume,
            "music_skip": self._music_skip,
            "music_stop": self._music_stop,
            "music_volume": self._music_volume,
        }

    def supports(self, kind: str) -> bool:
        return kind in self._routes

    def remembered_city(self, guild_id: int, user_id: int) -> str | None:
        return self._last_city.get((guild_id, user_id))

    async def dispatch(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        handler = self._routes.get(intent.kind)
        if handler is None:
            return "unsupported"
        try:
            outcome = await handler(ctx, intent)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[voice.command] failed guild=%s user=%s kind=%s", ctx.guild_id, ctx.user_id, intent.kind)
            await self.speak(ctx.guild_id, "I couldn't do that.")
            return "failed"
        logger.info(
            "[voice.command] guild=%s user=%s kind=%s outcome=%s",
            ctx.guild_id,
            ctx.user_id,
            intent.kind,
            outcome,
        )
        return outcome

    async def weather_for(self, ctx: CommandContext, city: str, when: str) -> str:
        self._last_city[(ctx.guild_id, ctx.user_id)] = city
        if self.weather_client is None:
            await self.speak(ctx.guild_id, "Weather isn't available right now.")
            return "weather_unavailable"
        line = await self.weather_client.spoken_report(city, when)
        await self.speak(ctx.guild_id, line)
        return "weather_reported"

    async def _say(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        spoken = await self.speak(ctx.guild_id, intent.text)
        return "spoken" if spoken else "not_spoken"

    async def _beep(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        queued = self.playback.enqueue(ctx.guild_id, PlaybackItem.from_pcm(make_beep(), label="beep"))
        return "queued" if queued else "not_connected"

    async def _leave(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        if self.leave_voice is None:
            return "unsupported"
        if await self.speak(ctx.guild_id, LEAVING_REPLY):
            # Disconnecting tears the player down, so let the goodbye finish first.
            await self.playback.wait_until_idle(ctx.guild_id, timeout=LEAVE_DRAIN_SECONDS)
        await self.leave_voice(ctx.guild_id)
        return "left"

    async def _weather(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        city = intent.location or self.remembered_city(ctx.guild_id, ctx.user_id)
        if not city:
            return "needs_location"
        return await self.weather_for(ctx, city, intent.when)

    async def _music_play(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        target = intent.query.strip()
        if not is_playable_target(target):
            await self.speak(ctx.guild_id, "I can only play links or local files right now.")
            return "unplayable"
        ffmpeg_path = self.ffmpeg_path

        def factory() -> discord.AudioSource:
            return discord.FFmpegPCMAudio(target, executable=ffmpeg_path, before_options="-nostdin")

        title = Path(target).name if not target.lower().startswith("http") else target
        await self.speak(ctx.guild_id, f"Playing {title}")
        queued = self.playback.enqueue(ctx.guild_id, PlaybackItem.from_source(factory, label=f"music:{title}"))
        return "queued" if queued else "not_connected"

    async def _confirm(self, ctx: CommandContext, done: bool, reply: str, outcome: str) -> str:
        await self.speak(ctx.guild_id, reply if done else NOTHING_PLAYING_REPLY)
        return outcome if done else "idle"

    async def _music_pause(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        paused = self.playback.pause(ctx.guild_id)
        if paused and self.post_status is not None:
            # The spoken line queues behind the held track, the status post shows up now.
            await self.post_status(ctx.guild_id, f"Paused by {ctx.user_label}.")
        return await self._confirm(ctx, paused, "Paused.", "paused")

    async def _music_resume(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        return await self._confirm(ctx, self.playback.resume(ctx.guild_id), "Resumed.", "resumed")

    async def _music_skip(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        return await self._confirm(ctx, self.playback.skip(ctx.guild_id), "Skipped.", "skipped")

    async def _music_stop(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        stopped = self.playback.stop(ctx.guild_id)
        return await self._confirm(ctx, stopped, "Stopped and cleared the queue.", "stopped")

    async def _music_volume(self, ctx: CommandContext, intent: VoiceIntent) -> str:
        changed = self.playback.set_volume(ctx.guild_id, intent.percent)
        return await self._confirm(ctx, changed, f"Volume set to {intent.percent}%.", "volume_set")
