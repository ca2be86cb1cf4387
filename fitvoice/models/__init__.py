"""Data models for the FitVoice application."""

from .audio import AudioFormat, AudioChunk, AudioStats
from .transcription import TranscriptionResult, Transcript
from .session import SessionState, SessionEndReason
from .events import (
    SessionStateChanged,
    TranscriptUpdated,
    SessionEnded,
    SessionStartFailed,
    AudioLevelChanged,
)

__all__ = [
    "AudioFormat",
    "AudioChunk",
    "AudioStats",
    "TranscriptionResult",
    "Transcript",
    "SessionState",
    "SessionEndReason",
    # Observer events
    "SessionStateChanged",
    "TranscriptUpdated",
    "SessionEnded",
    "SessionStartFailed",
    "AudioLevelChanged",
]
