from .capture import CapturedTurn, CapturePipeline
from .intents import VoiceIntent, parse_voice_command
from .playback import VoicePlayback, make_beep
from .router import IntentRouter, RouteResult
from .session import AwaitingSlot, SessionTracker
from .state import GuildVoiceState, PlaybackItem
from .wake import WakeDetector, WakeProfile, WakeResult, detect_wake

__all__ = [
    "AwaitingSlot",
    "CapturePipeline",
    "CapturedTurn",
    "GuildVoiceState",
    "IntentRouter",
    "PlaybackItem",
    "RouteResult",
    "SessionTracker",
    "VoiceIntent",
    "VoicePlayback",
    "WakeDetector",
    "WakeProfile",
    "WakeResult",
    "detect_wake",
    "make_beep",
    "parse_voice_command",
]
