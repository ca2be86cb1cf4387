"""Error taxonomy for FitVoice.

Exception hierarchy:
    FitVoiceError
    ├── CaptureError   : microphone could not be opened or stopped delivering
    ├── StreamError    : speech recognition stream failed
    ├── SessionError   : a session command was rejected or could not start
    ├── SubmitError    : finalized transcript could not be handed downstream
    └── ConfigError    : configuration file is unreadable or invalid
"""

from enum import Enum
from typing import Optional


class FitVoiceError(Exception):
    """Base exception for all FitVoice errors."""

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


# --- Audio capture ---


class CaptureErrorKind(Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"
    CONFIG_FAILED = "config_failed"


class CaptureError(FitVoiceError):
    """The audio input device could not be opened, configured or read."""

    def __init__(self, kind: CaptureErrorKind, details: Optional[str] = None) -> None:
        self.kind = kind
        super().__init__(message=f"Audio capture failed: {kind.value}", details=details)


# --- Transcription stream ---


class StreamErrorKind(Enum):
    BACKEND_UNAVAILABLE = "backend_unavailable"
    CANCELED = "canceled"
    TIMEOUT = "timeout"


class StreamError(FitVoiceError):
    """The streaming recognition session failed."""

    def __init__(self, kind: StreamErrorKind, details: Optional[str] = None) -> None:
        self.kind = kind
        super().__init__(message=f"Transcription stream failed: {kind.value}", details=details)


# --- Session ---


class SessionErrorKind(Enum):
    ALREADY_ACTIVE = "already_active"
    START_FAILED = "start_failed"


class SessionError(FitVoiceError):
    """A session command was rejected or the session could not be started.

    For ``START_FAILED`` the underlying ``CaptureError`` or ``StreamError`` is
    kept in ``reason``.
    """

    def __init__(self, kind: SessionErrorKind, reason: Optional[FitVoiceError] = None) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(
            message=f"Session error: {kind.value}",
            details=str(reason) if reason is not None else None,
        )


# --- Collaborators ---


class SubmitError(FitVoiceError):
    """The finalized transcript could not be submitted."""


class ConfigError(FitVoiceError):
    """Configuration could not be loaded."""
