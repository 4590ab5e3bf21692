from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import discord

from ..common import chunk_text
from ..voice_integration import VOICE_RECV_AVAILABLE, VoiceInputSink, voice_recv

logger = logging.getLogger("vigil_voice")


class VoiceMixin:
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        me = self.user
        if me is None or member.id != me.id:
            return
        guild = member.guild
        before_id = getattr(before.channel, "id", 0) or 0
        after_id = getattr(after.channel, "id", 0) or 0
        if before_id == after_id:
            return

        if after.channel is None:
            if self.playback.get(guild.id) is None:
                return
            logger.info("[voice.connection] dropped guild=%s channel=%s", guild.id, before_id)
            await self.post_status(guild.id, "Disconnected from voice.")
            await self._teardown_voice_guild(guild.id)
            return

        # Moved by someone else: the receive sink is bound to the old connection.
        if before.channel is not None and self.playback.get(guild.id) is not None:
            logger.info("[voice.connection] moved guild=%s %s->%s", guild.id, before_id, after_id)
            voice_client = guild.voice_client
            if voice_client is not None:
                self._start_listening(guild, voice_client)

    async def _connect_or_move_voice_client(
        self,
        guild: discord.Guild,
        target: discord.abc.Connectable,
    ) -> discord.VoiceClient | None:
        attempts = 3
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                voice_client = guild.voice_client
                if voice_client is None:
                    connected = await target.connect(
                        cls=voice_recv.VoiceRecvClient,
                        timeout=18.0,
                        reconnect=True,
                    )
                    return connected if isinstance(connected, discord.VoiceClient) else None

                if not isinstance(voice_client, discord.VoiceClient):
                    with contextlib.suppress(Exception):
                        await voice_client.disconnect(force=True)
                    continue

                if voice_client.channel != target:
                    await asyncio.wait_for(voice_client.move_to(target), timeout=12.0)
                return voice_client
            except asyncio.CancelledError:
                raise
            except (asyncio.TimeoutError, TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "[voice.connection] attempt %s/%s timed out guild=%s channel=%s",
                    attempt,
                    attempts,
                    guild.id,
                    getattr(target, "id", "unknown"),
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "[voice.connection] attempt %s/%s failed guild=%s channel=%s: %s",
                    attempt,
                    attempts,
                    guild.id,
                    getattr(target, "id", "unknown"),
                    exc,
                )

            current = guild.voice_client
            if current is not None:
                with contextlib.suppress(Exception):
                    if isinstance(current, voice_recv.VoiceRecvClient) and current.is_listening():
                        current.stop_listening()
                with contextlib.suppress(Exception):
                    await current.disconnect(force=True)
            await asyncio.sleep(0.35 * attempt)

        if last_error is not None:
            logger.error(
                "[voice.connection] gave up guild=%s channel=%s: %s",
                guild.id,
                getattr(target, "id", "unknown"),
                last_error,
            )
        return None

    def _start_listening(self, guild: discord.Guild, voice_client: Any) -> bool:
        if not isinstance(voice_client, voice_recv.VoiceRecvClient):
            return False
        if voice_client.is_listening():
            voice_client.stop_listening()

        sink: Any = VoiceInputSink(self, guild.id, self.user.id if self.user else 0)

        def _after(error: Exception | None) -> None:
            if error:
                logger.error("[voice.input] listening stopped guild=%s error=%s", guild.id, error)

        voice_client.listen(sink, after=_after)
        return True

    async def _ensure_voice_capture(
        self,
        guild: discord.Guild,
        member: discord.Member,
        text_channel_id: int | None,
    ) -> bool:
        if not self.settings.voice_enabled:
            return False
        if not VOICE_RECV_AVAILABLE or voice_recv is None:
            logger.error("[voice.connection] discord-ext-voice-recv is not installed")
            return False
        if not member.voice or not member.voice.channel:
            return False

        target = member.voice.channel
        voice_client = await self._connect_or_move_voice_client(guild, target)
        if voice_client is None:
            return False

        self.playback.attach(guild.id, voice_client, text_channel_id=text_channel_id)
        if not self._start_listening(guild, voice_client):
            return False
        logger.info("[voice.connection] capture active guild=%s channel=%s", guild.id, target.id)
        return True

    async def leave_voice(self, guild_id: int) -> bool:
        guild = self.get_guild(guild_id)
        voice_client = guild.voice_client if guild is not None else None
        await self._teardown_voice_guild(guild_id)
        if voice_client is None:
            return False
        if isinstance(voice_client, voice_recv.VoiceRecvClient):
            with contextlib.suppress(Exception):
                if voice_client.is_listening():
                    voice_client.stop_listening()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(voice_client.disconnect(force=True), timeout=4.0)
        logger.info("[voice.connection] left guild=%s", guild_id)
        return True

    async def post_status(self, guild_id: int, text: str) -> bool:
        state = self.playback.get(guild_id)
        if state is None or not state.text_channel_id:
            return False
        channel = self.get_channel(state.text_channel_id)
        if not isinstance(channel, (discord.TextChannel, discord.Thread)):
            return False
        try:
            for chunk in chunk_text(text, 1900):
                await channel.send(chunk)
        except discord.HTTPException as exc:
            logger.warning("[voice.status] send failed guild=%s error=%s", guild_id, exc)
            return False
        return True

    async def _teardown_voice_guild(self, guild_id: int) -> None:
        await self.capture.shutdown_guild(guild_id)
        self.playback.detach(guild_id)

    def push_voice_pcm(self, guild_id: int, user_id: int, user_label: str, pcm_48k_stereo: bytes) -> None:
        # Called on the voice_recv reader thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.capture.push_pcm, guild_id, user_id, user_label, pcm_48k_stereo)

    def push_voice_stop(self, guild_id: int, user_id: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.capture.speech_stopped, guild_id, user_id)
