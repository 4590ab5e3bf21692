from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

import discord

from ..common import collapse_spaces, strip_mentions

logger = logging.getLogger("vigil_voice")

_WAKE_PREFIX_RE = re.compile(r"^vi(?:[\s,:]|$)", re.IGNORECASE)
_LOCK_ARGS_RE = re.compile(
    r"^<@!?(\d+)>(?:\s+(\d{1,4}))?(?:\s+(soft|hard))?(?:\s+(.+))?$",
    re.IGNORECASE,
)
_RELEASE_ARGS_RE = re.compile(r"^<@!?(\d+)>", re.IGNORECASE)


@dataclass(slots=True)
class LockRequest:
    user_id: int
    minutes: int = 60
    level: str = "soft"
    reason: str | None = None


def parse_lock_args(args: str) -> LockRequest | None:
    match = _LOCK_ARGS_RE.match(args.strip())
    if match is None:
        return None
    user_id, minutes, level, reason = match.groups()
    return LockRequest(
        user_id=int(user_id),
        minutes=max(1, int(minutes)) if minutes else 60,
        level=(level or "soft").lower(),
        reason=reason.strip() if reason else None,
    )


def parse_release_args(args: str) -> int | None:
    match = _RELEASE_ARGS_RE.match(args.strip())
    return int(match.group(1)) if match else None


def split_command(raw: str, prefix: str) -> tuple[str, str] | None:
    """``!lock @x 5`` and ``vi lock @x 5`` both give ("lock", "@x 5")."""
    text = collapse_spaces(raw)
    if prefix and text.startswith(prefix):
        body = text[len(prefix) :].strip()
    else:
        match = re.match(r"^vi[\s,:]+(lock|release)\b", text, re.IGNORECASE)
        if match is None:
            return None
        body = text[match.start(1) :]
    if not body:
        return None
    name, _, args = body.partition(" ")
    return name.lower(), args.strip()


class MessageMixin:
    def _is_addressed(self, message: discord.Message) -> bool:
        me = self.user
        if me is not None and me.mentioned_in(message):
            return True
        resolved = getattr(message.reference, "resolved", None) if message.reference else None
        if isinstance(resolved, discord.Message) and me is not None and resolved.author.id == me.id:
            return True
        return bool(_WAKE_PREFIX_RE.match(message.content.strip()))

    async def _try_handle_system_command(self, message: discord.Message) -> bool:
        parsed = split_command(message.content, self.settings.command_prefix.strip())
        if parsed is None:
            return False
        name, args = parsed
        handler = {
            "join": self._command_join,
            "leave": self._command_leave,
            "bind": self._command_bind,
            "lock": self._command_lock,
            "release": self._command_release,
        }.get(name)
        if handler is None:
            return False
        if message.guild is None or not isinstance(message.author, discord.Member):
            await message.reply("That command works only in a server.")
            return True
        await handler(message, args)
        return True

    async def _command_join(self, message: discord.Message, args: str) -> None:
        if not self.settings.voice_enabled:
            await message.reply("Voice mode is disabled in config.")
            return
        voice_state = message.author.voice
        if voice_state is None or voice_state.channel is None:
            await message.reply("Join a voice channel first.")
            return

        target_name = voice_state.channel.name
        try:
            ok = await self._ensure_voice_capture(message.guild, message.author, message.channel.id)
        except asyncio.TimeoutError:
            logger.warning("[voice.connection] join timed out guild=%s", message.guild.id)
            await message.reply("Voice connection timed out. Try again in a few seconds.")
            return
        if ok:
            await message.reply(f"Connected to `{target_name}`.")
        else:
            await message.reply("Could not start voice capture. Check bot logs.")

    async def _command_leave(self, message: discord.Message, args: str) -> None:
        left = await self.leave_voice(message.guild.id)
        await message.reply("Left the voice channel." if left else "I'm not in a voice channel.")

    async def _command_bind(self, message: discord.Message, args: str) -> None:
        if self.playback.bind_text_channel(message.guild.id, message.channel.id):
            await message.reply("Status messages will be posted here.")
        else:
            await message.reply("I'm not in a voice channel.")

    @staticmethod
    def _can_moderate(member: discord.Member) -> bool:
        perms = member.guild_permissions
        return perms.moderate_members or perms.administrator

    async def _command_lock(self, message: discord.Message, args: str) -> None:
        if not self._can_moderate(message.author):
            await message.reply("You need the Moderate Members permission for that.")
            return
        request = parse_lock_args(args)
        if request is None:
            await message.reply("Usage: `lock @user [minutes] [soft|hard] [reason]`")
            return
        entry = self.moderation.lock_user(
            message.guild.id,
            request.user_id,
            message.author.id,
            minutes=request.minutes,
            level=request.level,
            reason=request.reason,
        )
        await message.reply(f"Locked <@{request.user_id}> ({entry.level}) for {request.minutes} minutes.")

    async def _command_release(self, message: discord.Message, args: str) -> None:
        if not self._can_moderate(message.author):
            await message.reply("You need the Moderate Members permission for that.")
            return
        user_id = parse_release_args(args)
        if user_id is None:
            await message.reply("Usage: `release @user`")
            return
        released = self.moderation.release_user(message.guild.id, user_id)
        await message.reply(f"Released <@{user_id}>." if released else f"<@{user_id}> was not locked.")

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        if await self._try_handle_system_command(message):
            return
        if message.guild is None:
            return

        text = strip_mentions(message.content, self.user.id if self.user else None)
        if not text:
            return
        try:
            await self.moderation.scan_and_act(
                message.guild,
                message.author.id,
                text,
                source="text",
                channel_id=message.channel.id,
                message=message,
                addressed_to_bot=self._is_addressed(message),
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[automod] text scan failed guild=%s user=%s", message.guild.id, message.author.id)
