"""Abstract base class for audio capture sources."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from ..exceptions import CaptureError
from ..models.audio import AudioChunk

ChunkCallback = Callable[[AudioChunk], None]
CaptureErrorCallback = Callable[[CaptureError], None]


class AbstractAudioCapture(ABC):
    """Microphone source that delivers fixed-size PCM chunks."""

    @abstractmethod
    def open(self,
             on_chunk: ChunkCallback,
             on_error: Optional[CaptureErrorCallback] = None) -> Any:
        """Open the input device and begin delivering chunks.

        Args:
            on_chunk: Called on the capture thread for every chunk read
            on_error: Called once if the device fails after opening

        Returns:
            Opaque handle to pass to ``close``

        Raises:
            CaptureError: The device is unavailable, access was denied or the
                stream could not be configured and activated
        """
        pass

    @abstractmethod
    def close(self, handle: Any) -> None:
        """Stop delivery and release the device. Idempotent."""
        pass
