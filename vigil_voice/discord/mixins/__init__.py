from .message_mixin import MessageMixin
from .voice_mixin import VoiceMixin

__all__ = [
    "MessageMixin",
    "VoiceMixin",
]
