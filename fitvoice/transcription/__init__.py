"""Transcription module for FitVoice."""

from .base import AbstractTranscriptionStream
from ..models.transcription import TranscriptionResult, Transcript
from .google_backend import GoogleStreamingTranscriber, GoogleStreamHandle

__all__ = [
    "AbstractTranscriptionStream",
    "TranscriptionResult",
    "Transcript",
    "GoogleStreamingTranscriber",
    "GoogleStreamHandle",
]
