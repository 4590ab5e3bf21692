from __future__ import annotations

import contextlib
import logging
from typing import Any

import discord

logger = logging.getLogger("vigil_voice")

try:
    from discord.ext import voice_recv

    VOICE_RECV_AVAILABLE = True
except Exception:
    voice_recv = None
    VOICE_RECV_AVAILABLE = False


_VOICE_RECV_DECODE_GUARD_INSTALLED = False


def install_voice_recv_decode_guard() -> None:
    """Drop corrupted opus packets instead of killing the receive thread."""
    global _VOICE_RECV_DECODE_GUARD_INSTALLED
    if _VOICE_RECV_DECODE_GUARD_INSTALLED or not VOICE_RECV_AVAILABLE:
        return

    try:
        from discord.opus import Decoder, OpusError
        from discord.ext.voice_recv import opus as voice_recv_opus
    except Exception:
        return

    original_decode_packet = getattr(voice_recv_opus.PacketDecoder, "_decode_packet", None)
    if original_decode_packet is None:
        return

    def _reset_decoder(decoder: Any) -> None:
        with contextlib.suppress(Exception):
            setattr(decoder, "_decoder", None if decoder.sink.wants_opus() else Decoder())

    def _guarded_decode_packet(self: Any, packet: Any) -> tuple[Any, bytes]:
        try:
            return original_decode_packet(self, packet)
        except OpusError as exc:
            if "corrupted stream" not in str(exc).lower():
                raise
            _reset_decoder(self)
            return packet, b""

    setattr(voice_recv_opus.PacketDecoder, "_decode_packet", _guarded_decode_packet)
    _VOICE_RECV_DECODE_GUARD_INSTALLED = True
    logger.info("[voice.input] decode guard enabled")


def _speaker_pcm(bot_user_id: int, user: Any, data: Any) -> tuple[int, str, bytes] | None:
    if user is None or getattr(user, "bot", False) or user.id == bot_user_id:
        return None
    pcm = getattr(data, "pcm", None)
    if not isinstance(pcm, (bytes, bytearray)) or not pcm:
        return None
    label = getattr(user, "display_name", None) or getattr(user, "name", str(user.id))
    return user.id, label, bytes(pcm)


class _VoiceInputSinkFallback:
    def __init__(self, bot: Any, guild_id: int, bot_user_id: int) -> None:
        self.bot = bot
        self.guild_id = guild_id
        self.bot_user_id = bot_user_id

    def wants_opus(self) -> bool:
        return False

    def write(self, user: discord.abc.User | None, data: Any) -> None:
        speaker = _speaker_pcm(self.bot_user_id, user, data)
        if speaker is not None:
            self.bot.push_voice_pcm(self.guild_id, *speaker)

    def speaking_stopped(self, member: Any) -> None:
        if member is not None and member.id != self.bot_user_id:
            self.bot.push_voice_stop(self.guild_id, member.id)

    def cleanup(self) -> None:
        return


if VOICE_RECV_AVAILABLE:
    from discord.ext.voice_recv.sinks import AudioSink as _RuntimeAudioSink

    class _VoiceInputSinkRuntime(_RuntimeAudioSink):
        def __init__(self, bot: Any, guild_id: int, bot_user_id: int) -> None:
            super().__init__(None)
            self.bot = bot
            self.guild_id = guild_id
            self.bot_user_id = bot_user_id

        def wants_opus(self) -> bool:
            return False

        def write(self, user: discord.abc.User | None, data: Any) -> None:
            speaker = _speaker_pcm(self.bot_user_id, user, data)
            if speaker is not None:
                self.bot.push_voice_pcm(self.guild_id, *speaker)

        @_RuntimeAudioSink.listener()
        def on_voice_member_speaking_stop(self, member: discord.Member) -> None:
            if member is not None and member.id != self.bot_user_id:
                self.bot.push_voice_stop(self.guild_id, member.id)

        def cleanup(self) -> None:
            return

    VoiceInputSink = _VoiceInputSinkRuntime
else:
    VoiceInputSink = _VoiceInputSinkFallback
