
from .brain import ConversationBrain, GeminiChatModel
from .synthesis import EdgeSpeechProvider, ElevenLabsSpeechProvider, SynthesisGateway
from .transcription import GoogleSpeechTranscriber, LocalWhisperTranscriber, PhraseHints, TranscriptionGateway
from .weather import WeatherClient

__all__ = [
    "ConversationBrain",
    "EdgeSpeechProvider",
    "ElevenLabsSpeechProvider",
    "GeminiChatModel",
    "GoogleSpeechTranscriber",
    "LocalWhisperTranscriber",
    "PhraseHints",
    "SynthesisGateway",
    "TranscriptionGateway",
    "WeatherClient",
]
