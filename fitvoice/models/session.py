"""Session-related data models."""

from enum import Enum


class SessionState(Enum):
    """Lifecycle state of the recording session controller."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class SessionEndReason(Enum):
    """Why an active session ended."""
    STOPPED = "stopped"              # User stop, stream confirmed completion
    FINAL_RESULT = "final_result"    # Backend finalized the utterance on its own
    STREAM_ERROR = "stream_error"
    CAPTURE_ERROR = "capture_error"
    GRACE_TIMEOUT = "grace_timeout"  # User stop, stream never confirmed
