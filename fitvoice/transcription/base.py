"""Abstract base class for streaming transcription backends."""

from abc import ABC, abstractmethod
from typing import Any, Callable
import logging

from ..exceptions import StreamError
from ..models.audio import AudioChunk
from ..models.transcription import TranscriptionResult

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TranscriptionResult], None]
StreamErrorCallback = Callable[[StreamError], None]


class AbstractTranscriptionStream(ABC):
    """Bidirectional streaming recognition: audio in, partial and final results out.

    A stream emits zero or more partial results followed by at most one final
    result, or a single error. Either a final result or an error completes it.
    """

    def __init__(self, language: str = "en-US"):
        """Initialize backend with language preference."""
        self.language = language

    @abstractmethod
    def open(self, on_result: ResultCallback, on_error: StreamErrorCallback) -> Any:
        """Open a recognition session, canceling any session this backend still has open.

        Returns:
            Opaque handle for ``append``, ``finish`` and ``cancel``

        Raises:
            StreamError: The backend cannot be reached
        """
        pass

    @abstractmethod
    def append(self, handle: Any, chunk: AudioChunk) -> None:
        """Queue audio for recognition. Silently dropped after finish or cancel."""
        pass

    @abstractmethod
    def finish(self, handle: Any) -> None:
        """Signal end of audio. Pending results, including the final one, still arrive."""
        pass

    @abstractmethod
    def cancel(self, handle: Any) -> None:
        """Abort immediately. No callbacks fire for the handle once this returns."""
        pass

    def cleanup(self) -> None:
        """Clean up backend resources."""
        pass
