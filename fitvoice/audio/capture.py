"""Microphone capture on a dedicated thread, backed by PyAudio."""

import errno
import itertools
import logging
import time
from datetime import datetime
from threading import Event, Lock, Thread, current_thread
from typing import Optional

import pyaudio

from ..exceptions import CaptureError, CaptureErrorKind
from ..models.audio import AudioChunk, AudioFormat, AudioStats
from .base import AbstractAudioCapture, ChunkCallback, CaptureErrorCallback
from .device import SharedAudioDevice, SHARED_AUDIO_DEVICE

logger = logging.getLogger(__name__)

# PortAudio error codes surfaced as OSError.errno by PyAudio
PA_INVALID_DEVICE = -9996
PA_DEVICE_UNAVAILABLE = -9985
PA_UNANTICIPATED_HOST_ERROR = -9999

# Host API text PortAudio forwards when the OS refuses microphone access
_ACCESS_REFUSED_MARKERS = ("permission denied", "access denied", "not permitted", "not authorized")

_capture_ids = itertools.count(1)


class CaptureHandle:
    """State of one open capture. Owned by whoever called ``open``."""

    def __init__(self, capture_id: str, pyaudio_instance: pyaudio.PyAudio,
                 stream: pyaudio.Stream, audio_format: AudioFormat):
        self.capture_id = capture_id
        self.pyaudio_instance = pyaudio_instance
        self.stream = stream
        self.audio_format = audio_format

        self.recording_thread: Optional[Thread] = None
        self.stop_event = Event()
        self.lock = Lock()
        self.closed = False
        self.released = False

        # Statistics tracking
        self.start_time = datetime.now()
        self.total_chunks = 0

    @property
    def is_recording(self) -> bool:
        return not self.closed and not self.released


def _is_access_refused(error: OSError) -> bool:
    # PermissionError and EACCES/EPERM come from platform wrappers, not PortAudio itself
    if isinstance(error, PermissionError) or error.errno in (errno.EACCES, errno.EPERM):
        return True
    if error.errno == PA_UNANTICIPATED_HOST_ERROR:
        message = str(error).lower()
        return any(marker in message for marker in _ACCESS_REFUSED_MARKERS)
    return False


def _capture_error_from_os_error(error: OSError, default_kind: CaptureErrorKind) -> CaptureError:
    if _is_access_refused(error):
        return CaptureError(CaptureErrorKind.PERMISSION_DENIED, str(error))
    if error.errno in (PA_INVALID_DEVICE, PA_DEVICE_UNAVAILABLE):
        return CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, str(error))
    return CaptureError(default_kind, str(error))


class AudioCapture(AbstractAudioCapture):
    """Voice-optimised microphone capture delivering chunks through a callback."""

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_size: int = 1024,
        channels: int = 1,
        format: int = pyaudio.paInt16,
        device_index: Optional[int] = None,
        device: Optional[SharedAudioDevice] = None,
    ):
        """Initialize audio capture with specified parameters.

        Args:
            sample_rate: Audio sample rate (16kHz suits speech recognition)
            chunk_size: Size of each audio chunk in samples
            channels: Number of audio channels (1 for mono)
            format: Audio format (16-bit signed int)
            device_index: PyAudio input device index, None for the default input
            device: Process-wide device claim, shared by every capture by default
        """
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = channels
        self.format = format
        self.device_index = device_index
        self.device = device or SHARED_AUDIO_DEVICE
        self.audio_format = AudioFormat(
            sample_rate=sample_rate,
            channels=channels,
            sample_width=pyaudio.get_sample_size(format),
        )

    def open(self,
             on_chunk: ChunkCallback,
             on_error: Optional[CaptureErrorCallback] = None) -> CaptureHandle:
        """Claim the device, open and activate the input stream, start the capture thread."""
        capture_id = f"capture_{next(_capture_ids)}"
        if not self.device.activate(capture_id):
            raise CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE,
                               f"audio device '{self.device.name}' is already in use by {self.device.owner}")

        pyaudio_instance = None
        stream = None
        try:
            try:
                pyaudio_instance = pyaudio.PyAudio()
            except OSError as e:
                raise _capture_error_from_os_error(e, CaptureErrorKind.DEVICE_UNAVAILABLE) from e

            device_index = self.__resolve_input_device(pyaudio_instance)
            self.__check_format(pyaudio_instance, device_index)
            stream = self.__open_audio_stream(pyaudio_instance, device_index)
            self.__activate_stream(stream)
        except CaptureError as e:
            logger.error(f"Failed to open audio capture: {e}")
            self.__abort_open(capture_id, pyaudio_instance, stream)
            raise
        except Exception as e:
            logger.error(f"Unexpected error opening audio capture: {e}", exc_info=True)
            self.__abort_open(capture_id, pyaudio_instance, stream)
            raise CaptureError(CaptureErrorKind.CONFIG_FAILED, str(e)) from e

        handle = CaptureHandle(capture_id, pyaudio_instance, stream, self.audio_format)
        handle.recording_thread = Thread(
            target=self._record_continuously,
            args=(handle, on_chunk, on_error),
            daemon=True,
        )
        handle.recording_thread.name = "AudioCaptureThread"
        handle.recording_thread.start()

        logger.info(f"Audio capture {capture_id} started: {self.sample_rate}Hz, "
                    f"{self.chunk_size} samples/chunk, {self.channels} channel(s)")
        return handle

    def close(self, handle: CaptureHandle) -> None:
        """Stop recording and release the device. Calling it again is a no-op."""
        with handle.lock:
            if handle.closed:
                return
            handle.closed = True

        logger.info(f"Stopping audio capture {handle.capture_id}")
        handle.stop_event.set()

        thread = handle.recording_thread
        if thread is None:
            self._release(handle)
            return

        # The capture thread releases its own resources on the way out
        if thread is current_thread():
            return

        if thread.is_alive():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning("Recording thread did not stop cleanly")
                return

        self._release(handle)
        logger.info(f"Audio capture {handle.capture_id} stopped. Total chunks: {handle.total_chunks}")

    def get_recording_stats(self, handle: Optional[CaptureHandle] = None) -> AudioStats:
        """Get recording statistics for a capture handle."""
        if handle is None:
            return AudioStats(
                is_recording=False,
                duration_seconds=0.0,
                sample_rate=self.sample_rate,
                chunk_size=self.chunk_size,
                total_chunks=0,
            )

        return AudioStats(
            is_recording=handle.is_recording,
            duration_seconds=(datetime.now() - handle.start_time).total_seconds(),
            sample_rate=self.sample_rate,
            chunk_size=self.chunk_size,
            total_chunks=handle.total_chunks,
        )

    def __resolve_input_device(self, pyaudio_instance: pyaudio.PyAudio) -> int:
        if self.device_index is not None:
            return self.device_index
        try:
            info = pyaudio_instance.get_default_input_device_info()
        except OSError as e:
            raise CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE,
                               f"no default input device: {e}") from e
        return int(info["index"])

    def __check_format(self, pyaudio_instance: pyaudio.PyAudio, device_index: int) -> None:
        try:
            pyaudio_instance.is_format_supported(
                self.sample_rate,
                input_device=device_index,
                input_channels=self.channels,
                input_format=self.format,
            )
        except ValueError as e:
            raise CaptureError(CaptureErrorKind.CONFIG_FAILED,
                               f"unsupported input format {self.sample_rate}Hz/"
                               f"{self.channels}ch: {e}") from e

    def __open_audio_stream(self, pyaudio_instance: pyaudio.PyAudio, device_index: int) -> pyaudio.Stream:
        # Input only; the stream is activated separately so activation failures surface
        try:
            stream = pyaudio_instance.open(
                format=self.format,
                channels=self.channels,
                rate=self.sample_rate,
                input=True,
                output=False,
                input_device_index=device_index,
                frames_per_buffer=self.chunk_size,
                start=False,
                stream_callback=None,
            )
        except OSError as e:
            raise _capture_error_from_os_error(e, CaptureErrorKind.CONFIG_FAILED) from e
        except ValueError as e:
            raise CaptureError(CaptureErrorKind.CONFIG_FAILED, str(e)) from e
        logger.debug(f"Audio stream opened on input device {device_index}")
        return stream

    def __activate_stream(self, stream: pyaudio.Stream) -> None:
        try:
            stream.start_stream()
        except OSError as e:
            raise _capture_error_from_os_error(e, CaptureErrorKind.CONFIG_FAILED) from e

    def __abort_open(self, capture_id: str,
                     pyaudio_instance: Optional[pyaudio.PyAudio],
                     stream: Optional[pyaudio.Stream]) -> None:
        try:
            if stream is not None:
                stream.close()
        except OSError as e:
            logger.warning(f"Error closing half-opened audio stream: {e}")
        finally:
            if pyaudio_instance is not None:
                pyaudio_instance.terminate()
            self.device.deactivate(capture_id)

    def __read_audio_chunk(self, handle: CaptureHandle) -> bytes:
        audio_chunk = handle.stream.read(
            self.chunk_size,
            exception_on_overflow=False
        )
        handle.total_chunks += 1
        return audio_chunk

    def _record_continuously(self, handle: CaptureHandle,
                             on_chunk: ChunkCallback,
                             on_error: Optional[CaptureErrorCallback]) -> None:
        """Internal method: continuous recording loop in the capture thread."""
        try:
            while not handle.stop_event.is_set():
                try:
                    data = self.__read_audio_chunk(handle)
                except OSError as e:
                    if handle.stop_event.is_set():
                        break
                    logger.error(f"Audio read failed on {handle.capture_id}: {e}")
                    if on_error:
                        on_error(_capture_error_from_os_error(e, CaptureErrorKind.DEVICE_UNAVAILABLE))
                    break

                chunk = AudioChunk(
                    data=data,
                    format=handle.audio_format,
                    sequence_number=handle.total_chunks,
                    timestamp=time.time(),
                )
                try:
                    on_chunk(chunk)
                except Exception as e:
                    logger.error(f"Chunk callback failed for chunk {chunk.sequence_number}: {e}",
                                 exc_info=True)
        except Exception as e:
            logger.error(f"Capture thread for {handle.capture_id} failed: {e}", exc_info=True)
            if on_error and not handle.stop_event.is_set():
                on_error(CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, str(e)))
        finally:
            self._release(handle)

    def _release(self, handle: CaptureHandle) -> None:
        """Close the stream, terminate PyAudio and give the device back. Runs once."""
        with handle.lock:
            if handle.released:
                return
            handle.released = True

        try:
            handle.stream.stop_stream()
            handle.stream.close()
        except OSError as e:
            logger.warning(f"Error closing audio stream for {handle.capture_id}: {e}")
        finally:
            handle.pyaudio_instance.terminate()
            self.device.deactivate(handle.capture_id)
