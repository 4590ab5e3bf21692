from __future__ import annotations

import io
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque

import discord


@dataclass(slots=True)
class PlaybackItem:
    """Raw 48 kHz stereo PCM or a factory for a prepared audio source."""

    label: str
    pcm: bytes | None = None
    source_factory: Callable[[], discord.AudioSource] | None = None

    @classmethod
    def from_pcm(cls, pcm: bytes, label: str = "speech") -> "PlaybackItem":
        return cls(label=label, pcm=pcm)

    @classmethod
    def from_source(cls, factory: Callable[[], discord.AudioSource], label: str) -> "PlaybackItem":
        return cls(label=label, source_factory=factory)

    def build(self, volume: float) -> discord.AudioSource:
        if self.pcm is not None:
            source: discord.AudioSource = discord.PCMAudio(io.BytesIO(self.pcm))
        elif self.source_factory is not None:
            source = self.source_factory()
        else:
            raise ValueError("PlaybackItem needs pcm or source_factory")
        return discord.PCMVolumeTransformer(source, volume=volume)


@dataclass(slots=True)
class GuildVoiceState:
    guild_id: int
    voice_client: Any
    text_channel_id: int | None = None
    queue: Deque[PlaybackItem] = field(default_factory=deque)
    playing: bool = False
    current: PlaybackItem | None = None
    current_source: Any = None
    busy_speakers: set[int] = field(default_factory=set)
    volume: float = 1.0
    generation: int = 0
