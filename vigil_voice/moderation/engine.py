from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

import discord

from ..config import Settings
from .classifier import ModerationPolicy, ModerationVerdict, classify
from .ledger import LockdownEntry, LockdownRegistry, StrikeLedger

logger = logging.getLogger("vigil_voice")

VOICE_NOTICE_TEXT = "Notice: moderation warning."


@dataclass(slots=True)
class ModerationOutcome:
    violated: bool
    reason: str | None = None
    strikes: int | None = None
    soft: bool = False
    action: str | None = None


def _excerpt(text: str, limit: int = 400) -> str:
    return text[:limit]


class ModerationEngine:
    """Classifier plus the per-guild strike ledger, lockdowns and enforcement."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        default_policy: ModerationPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if default_policy is None:
            default_policy = ModerationPolicy.from_settings(settings) if settings is not None else ModerationPolicy()
        self.default_policy = default_policy
        self.strikes = StrikeLedger(default_policy.decay_hours, clock=clock)
        self.lockdowns = LockdownRegistry(clock=clock)
        self._policies: dict[int, ModerationPolicy] = {}

    def policy_for(self, guild_id: int) -> ModerationPolicy:
        policy = self._policies.get(guild_id)
        if policy is None:
            policy = self.default_policy
            self._policies[guild_id] = policy
        return policy

    def set_policy(self, guild_id: int, policy: ModerationPolicy) -> None:
        self._policies[guild_id] = policy

    def lock_user(
        self,
        guild_id: int,
        user_id: int,
        by: int,
        minutes: int = 60,
        level: str = "soft",
        reason: str | None = None,
    ) -> LockdownEntry:
        entry = self.lockdowns.lock(guild_id, user_id, by, minutes=minutes, level=level, reason=reason)
        logger.info(
            "[automod] lock guild=%s user=%s by=%s level=%s minutes=%s reason=%s",
            guild_id,
            user_id,
            by,
            level,
            minutes,
            reason or "-",
        )
        return entry

    def release_user(self, guild_id: int, user_id: int) -> bool:
        released = self.lockdowns.release(guild_id, user_id)
        logger.info("[automod] release guild=%s user=%s had_lock=%s", guild_id, user_id, released)
        return released

    def scan(
        self,
        text: str,
        *,
        guild_id: int,
        user_id: int,
        channel_id: int | None = None,
        addressed_to_bot: bool = False,
    ) -> ModerationVerdict:
        policy = self.policy_for(guild_id)
        if not policy.enabled:
            return ModerationVerdict(violated=False)
        lock = self.lockdowns.get(guild_id, user_id)
        relaxed = channel_id is not None and channel_id in policy.relaxed_channel_ids
        return classify(
            text,
            policy,
            relaxed=relaxed,
            lock_level=lock.level if lock is not None else None,
            addressed_to_bot=addressed_to_bot,
        )

    @staticmethod
    def is_exempt(member: Any, channel_id: int | None, policy: ModerationPolicy) -> bool:
        if member.id in policy.allow_user_ids:
            return True
        if channel_id is not None and channel_id in policy.exempt_channel_ids:
            return True
        guild = getattr(member, "guild", None)
        if guild is not None and member.id == getattr(guild, "owner_id", None):
            return True
        perms = getattr(member, "guild_permissions", None)
        if perms is not None and perms.administrator:
            return True
        return any(role.id in policy.exempt_role_ids for role in getattr(member, "roles", []))

    async def _resolve_member(self, guild: discord.Guild, user_id: int) -> discord.Member | None:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.HTTPException:
            return None

    async def ensure_log_channel(self, guild: discord.Guild, name: str) -> discord.TextChannel | None:
        existing = discord.utils.get(guild.text_channels, name=name)
        if existing is not None:
            return existing
        me = guild.me
        if me is None or not me.guild_permissions.manage_channels:
            return None
        try:
            return await guild.create_text_channel(name, reason="Auto-Mod logs")
        except discord.HTTPException as exc:
            logger.warning("[automod] log_channel_create_failed guild=%s name=%s error=%s", guild.id, name, exc)
            return None

    @staticmethod
    async def _post(channel: discord.abc.Messageable | None, content: str) -> None:
        if channel is None:
            return
        with contextlib.suppress(discord.HTTPException):
            await channel.send(content)

    @staticmethod
    async def _dm(member: discord.Member, content: str) -> None:
        with contextlib.suppress(discord.HTTPException):
            await member.send(content)

    async def scan_and_act(
        self,
        guild: discord.Guild,
        user_id: int,
        text: str,
        *,
        source: str,
        channel_id: int | None = None,
        message: discord.Message | None = None,
        addressed_to_bot: bool = False,
        voice_notice: Callable[[str], Awaitable[Any]] | None = None,
    ) -> ModerationOutcome:
        policy = self.policy_for(guild.id)
        if not policy.enabled or not text.strip():
            return ModerationOutcome(violated=False)

        member = await self._resolve_member(guild, user_id)
        if member is None:
            return ModerationOutcome(violated=False)
        if self.is_exempt(member, channel_id, policy):
            return ModerationOutcome(violated=False)

        verdict = self.scan(
            text,
            guild_id=guild.id,
            user_id=user_id,
            channel_id=channel_id,
            addressed_to_bot=addressed_to_bot,
        )
        if not verdict.violated:
            return ModerationOutcome(violated=False)

        log_channel = await self.ensure_log_channel(guild, policy.log_channel)

        if verdict.soft:
            logger.info(
                "[automod] soft guild=%s user=%s source=%s reason=%s",
                guild.id,
                user_id,
                source,
                verdict.reason,
            )
            await self._post(
                log_channel,
                f"Auto-Mod (soft) | {member.mention} | {source} | **{verdict.reason}**\n> {_excerpt(text)}",
            )
            await self._dm(member, f"Heads up, try to avoid that here. ({verdict.reason})")
            return ModerationOutcome(violated=True, reason=verdict.reason, soft=True)

        if source == "voice" and voice_notice is not None:
            try:
                await voice_notice(VOICE_NOTICE_TEXT)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[automod] voice_notice_failed guild=%s user=%s error=%s", guild.id, user_id, exc)

        count = self.strikes.add(guild.id, user_id, verdict.weight, decay_hours=policy.decay_hours)
        logger.info(
            "[automod] strike guild=%s user=%s source=%s reason=%s weight=%s strikes=%s detail=%s",
            guild.id,
            user_id,
            source,
            verdict.reason,
            verdict.weight,
            count,
            verdict.detail or "-",
        )
        await self._post(
            log_channel,
            f"Auto-Mod | {member.mention} | {source} | **{verdict.reason}** | strikes={count}\n> {_excerpt(text)}",
        )

        me = guild.me
        can_manage_messages = me is not None and me.guild_permissions.manage_messages
        if source == "text" and message is not None and policy.delete_text and can_manage_messages:
            with contextlib.suppress(discord.HTTPException):
                await message.delete()

        await self._dm(
            member,
            f"Notice: your message triggered **{verdict.reason}**. Strikes: {count}. Keep it playful, not harmful.",
        )

        action = await self._escalate(guild, member, count, verdict.reason or "violation", policy, log_channel)
        return ModerationOutcome(violated=True, reason=verdict.reason, strikes=count, action=action)

    async def _escalate(
        self,
        guild: discord.Guild,
        member: discord.Member,
        count: int,
        reason: str,
        policy: ModerationPolicy,
        log_channel: discord.abc.Messageable | None,
    ) -> str | None:
        me = guild.me
        if me is None:
            return None
        perms = me.guild_permissions
        try:
            if count >= policy.strikes_ban and perms.ban_members:
                await guild.ban(member, reason=f"Auto-Mod ban: {reason}")
                action = "ban"
                await self._post(log_channel, f"Banned {member.mention} (strikes={count}).")
            elif count >= policy.strikes_kick and perms.kick_members:
                await member.kick(reason=f"Auto-Mod kick: {reason}")
                action = "kick"
                await self._post(log_channel, f"Kicked {member.mention} (strikes={count}).")
            elif count >= policy.strikes_timeout and perms.moderate_members:
                await member.timeout(
                    timedelta(minutes=policy.timeout_minutes),
                    reason=f"Auto-Mod timeout ({policy.timeout_minutes}m): {reason}",
                )
                action = "timeout"
                await self._post(
                    log_channel,
                    f"Timed out {member.mention} for {policy.timeout_minutes}m (strikes={count}).",
                )
            else:
                return None
        except discord.HTTPException as exc:
            logger.warning(
                "[automod] enforcement_failed guild=%s user=%s strikes=%s error=%s",
                guild.id,
                member.id,
                count,
                exc,
            )
            await self._post(log_channel, f"Could not act on {member.mention}: {exc}")
            return "failed"

        logger.info("[automod] enforce guild=%s user=%s action=%s strikes=%s", guild.id, member.id, action, count)
        return action
