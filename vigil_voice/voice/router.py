from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..moderation.engine import ModerationEngine
from ..services.brain import ConversationBrain
from ..services.synthesis import SynthesisGateway
from ..services.weather import WeatherClient
from .capture import CapturedTurn
from .commands import CommandContext, Leave, PostStatus, VoiceCommandHandlers
from .intents import parse_voice_command
from .playback import VoicePlayback
from .session import AwaitingSlot, SessionTracker
from .state import PlaybackItem
from .wake import WakeDetector

logger = logging.getLogger("vigil_voice")

LISTENING_REPLY = "I'm listening."
ASK_CITY_REPLY = "Which city?"
# Below this an alias match inside an open session is treated as an ordinary word.
STRIP_ALIAS_MIN_CONFIDENCE = 0.7


@dataclass(slots=True)
class RouteResult:
    outcome: str
    detail: str = ""
    reply: str | None = None


class IntentRouter:
    """Turns a finished transcript into moderation, a command, or a chat reply."""

    def __init__(
        self,
        *,
        wake: WakeDetector,
        sessions: SessionTracker,
        playback: VoicePlayback,
        synthesis: SynthesisGateway,
        brain: ConversationBrain,
        moderation: ModerationEngine | None = None,
        guild_lookup: Callable[[int], Any] | None = None,
        weather: WeatherClient | None = None,
        leave: Leave | None = None,
        post_status: PostStatus | None = None,
        ffmpeg_path: str = "ffmpeg",
        reprompt_ms: int = 5000,
    ) -> None:
        self.wake = wake
        self.sessions = sessions
        self.playback = playback
        self.synthesis = synthesis
        self.brain = brain
        self.moderation = moderation
        self.guild_lookup = guild_lookup
        self.reprompt_ms = reprompt_ms
        self.commands = VoiceCommandHandlers(
            playback,
            self.speak,
            weather=weather,
            leave=leave,
            post_status=post_status,
            ffmpeg_path=ffmpeg_path,
        )

    async def speak(self, guild_id: int, text: str) -> bool:
        if not self.playback.is_connected(guild_id):
            return False
        pcm = await self.synthesis.synthesize(text)
        if pcm is None:
            logger.info("[voice.route] guild=%s speak=skipped reason=synthesis_failed", guild_id)
            return False
        return self.playback.enqueue(guild_id, PlaybackItem.from_pcm(pcm, label="speech"))

    async def _moderate(self, turn: CapturedTurn, addressed: bool) -> RouteResult | None:
        if self.moderation is None or self.guild_lookup is None:
            return None
        guild = self.guild_lookup(turn.guild_id)
        if guild is None:
            return None
        voice_client = getattr(guild, "voice_client", None)
        channel = getattr(voice_client, "channel", None)
        outcome = await self.moderation.scan_and_act(
            guild,
            turn.user_id,
            turn.text,
            source="voice",
            channel_id=getattr(channel, "id", None),
            addressed_to_bot=addressed,
            voice_notice=lambda line: self.speak(turn.guild_id, line),
        )
        if outcome.violated and not outcome.soft:
            return RouteResult(outcome="moderated", detail=outcome.reason or "")
        return None

    async def handle_transcript(self, turn: CapturedTurn) -> RouteResult:
        guild_id, user_id = turn.guild_id, turn.user_id
        if not self.playback.is_connected(guild_id):
            logger.info("[voice.route] guild=%s user=%s outcome=not_connected", guild_id, user_id)
            return RouteResult(outcome="not_connected")

        session_active = self.sessions.is_active(guild_id, user_id)
        wake = self.wake.detect(turn.text, guild_id, session_active=session_active)
        addressed = wake.wake or session_active

        try:
            moderated = await self._moderate(turn, addressed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[voice.route] moderation failed guild=%s user=%s", guild_id, user_id)
            moderated = None
        if moderated is not None:
            logger.info(
                "[voice.route] guild=%s user=%s outcome=moderated reason=%s",
                guild_id,
                user_id,
                moderated.detail,
            )
            return moderated

        if not session_active:
            if not wake.wake:
                logger.info("[voice.route] guild=%s user=%s outcome=dropped reason=%s", guild_id, user_id, wake.reason)
                return RouteResult(outcome="dropped", detail=wake.reason)
            self.sessions.wake(guild_id, user_id)
            remainder = wake.remainder or ""
            logger.info(
                "[voice.route] guild=%s user=%s wake alias=%s confidence=%.2f",
                guild_id,
                user_id,
                wake.alias,
                wake.confidence,
            )
        else:
            self.sessions.extend(guild_id, user_id)
            if wake.alias is not None and wake.confidence >= STRIP_ALIAS_MIN_CONFIDENCE:
                remainder = wake.remainder or ""
            else:
                remainder = turn.text.strip()

        if not remainder:
            await self.speak(guild_id, LISTENING_REPLY)
            return RouteResult(outcome="listening", reply=LISTENING_REPLY)

        ctx = CommandContext(guild_id=guild_id, user_id=user_id, user_label=turn.user_label)
        return await self.route(ctx, remainder)

    async def route(self, ctx: CommandContext, text: str) -> RouteResult:
        guild_id, user_id = ctx.guild_id, ctx.user_id

        awaiting = self.sessions.get_awaiting(guild_id, user_id)
        if awaiting is not None and awaiting.slot == "location":
            self.sessions.set_awaiting(guild_id, user_id, None)
            city = text.strip().strip(".?!,")
            detail = await self.commands.weather_for(ctx, city, awaiting.hint or "now")
            logger.info("[voice.route] guild=%s user=%s outcome=slot slot=location city=%s", guild_id, user_id, city)
            return RouteResult(outcome="slot", detail=detail)

        intent = parse_voice_command(text)
        if intent.kind != "none" and self.commands.supports(intent.kind):
            detail = await self.commands.dispatch(ctx, intent)
            if detail == "needs_location":
                prompt: str | None = None
                if self.sessions.should_prompt_again(guild_id, user_id, self.reprompt_ms):
                    await self.speak(guild_id, ASK_CITY_REPLY)
                    self.sessions.mark_prompted(guild_id, user_id)
                    prompt = ASK_CITY_REPLY
                self.sessions.set_awaiting(guild_id, user_id, AwaitingSlot(slot="location", hint=intent.when))
                logger.info("[voice.route] guild=%s user=%s outcome=slot asked=location", guild_id, user_id)
                return RouteResult(outcome="slot", detail="asked_location", reply=prompt)
            return RouteResult(outcome="command", detail=f"{intent.kind}:{detail}")

        state = self.playback.get(guild_id)
        channel_key = state.text_channel_id if state is not None and state.text_channel_id else 0
        try:
            reply = await self.brain.respond(guild_id, channel_key, ctx.user_label, text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[voice.route] guild=%s user=%s outcome=failed stage=brain error=%s", guild_id, user_id, exc)
            return RouteResult(outcome="failed", detail="brain")
        if not reply:
            return RouteResult(outcome="failed", detail="empty_reply")
        await self.speak(guild_id, reply)
        logger.info("[voice.route] guild=%s user=%s outcome=chat chars=%s", guild_id, user_id, len(reply))
        return RouteResult(outcome="chat", reply=reply)
