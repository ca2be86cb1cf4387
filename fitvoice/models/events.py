"""Event models published to session observers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..exceptions import FitVoiceError, SessionError
from .session import SessionState, SessionEndReason
from .transcription import Transcript


@dataclass
class SessionStateChanged:
    """The controller moved to a new lifecycle state."""
    session_id: Optional[str]
    state: SessionState
    previous_state: SessionState
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class TranscriptUpdated:
    """The running transcript took a new non-empty hypothesis."""
    session_id: str
    text: str
    is_final: bool
    sequence: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionEnded:
    """A started session has been torn down; resources are released."""
    session_id: str
    final_text: str
    transcript: Transcript
    reason: SessionEndReason
    error: Optional[FitVoiceError] = None  # Capture/stream error that ended the session
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionStartFailed:
    """The session could not be started and was rolled back to idle."""
    session_id: str
    error: SessionError
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AudioLevelChanged:
    """Peak level of the latest captured chunk, for waveform displays."""
    session_id: str
    peak_level: float
    sequence_number: int
    timestamp: datetime = field(default_factory=datetime.now)
