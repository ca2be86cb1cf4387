"""Transcription-related data models."""

from dataclasses import dataclass, field, replace
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    """One hypothesis emitted by a streaming recognition session."""
    text: str
    is_final: bool
    sequence: int
    confidence: float = 0.0
    stability: float = 0.0  # Backend's estimate that a partial will not change
    timestamp: datetime = field(default_factory=datetime.now)
    service: str = ""
    language: str = "en-US"


@dataclass
class Transcript:
    """Accumulated view of the current session's transcription.

    Only ``apply`` mutates the text; callers never assign it directly.
    """
    current_text: str = ""
    is_final: bool = False
    last_sequence: int = -1

    def apply(self, result: TranscriptionResult) -> bool:
        """Apply a result and return True if its text was taken.

        Empty partials keep the last good text instead of blanking it.
        """
        if result.sequence < self.last_sequence:
            logger.debug(f"Dropping out-of-order result {result.sequence} "
                         f"(last applied {self.last_sequence})")
            return False

        self.last_sequence = result.sequence
        if result.is_final:
            self.is_final = True

        if not result.text or not result.text.strip():
            return False

        self.current_text = result.text
        return True

    def reset(self) -> None:
        self.current_text = ""
        self.is_final = False
        self.last_sequence = -1

    def copy(self) -> "Transcript":
        return replace(self)
