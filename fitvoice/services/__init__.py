"""Services layer for FitVoice session logic."""

from .event_publisher import SessionEventPublisher
from .session_controller import SessionController
from .submission import TranscriptSubmitter

__all__ = [
    "SessionEventPublisher",
    "SessionController",
    "TranscriptSubmitter",
]
