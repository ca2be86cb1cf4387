"""Audio-related data models."""

from dataclasses import dataclass, field
import time

import numpy as np


@dataclass(frozen=True)
class AudioFormat:
    """PCM format of captured audio."""
    sample_rate: int = 16000
    channels: int = 1
    sample_width: int = 2  # Bytes per sample (16-bit signed int)

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.sample_width


@dataclass(frozen=True)
class AudioChunk:
    """One fixed-size slice of captured PCM audio."""
    data: bytes
    format: AudioFormat
    sequence_number: int
    timestamp: float = field(default_factory=time.time)  # Unix time the chunk was read

    @property
    def duration_ms(self) -> int:
        if not self.data:
            return 0
        return int(len(self.data) / self.format.bytes_per_second * 1000)

    def peak_level(self) -> float:
        """Peak absolute amplitude normalised to 0.0 - 1.0."""
        if len(self.data) < 2:
            return 0.0
        samples = np.frombuffer(self.data, dtype=np.int16)
        return float(np.max(np.abs(samples.astype(np.int32)))) / 32768.0


@dataclass
class AudioStats:
    """Audio recording statistics."""
    is_recording: bool
    duration_seconds: float
    sample_rate: int
    chunk_size: int
    total_chunks: int
