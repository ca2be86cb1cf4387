"""Audio capture module."""

from .base import AbstractAudioCapture
from .capture import AudioCapture, CaptureHandle
from .device import SharedAudioDevice, SHARED_AUDIO_DEVICE

__all__ = [
    'AbstractAudioCapture',
    'AudioCapture',
    'CaptureHandle',
    'SharedAudioDevice',
    'SHARED_AUDIO_DEVICE',
]
