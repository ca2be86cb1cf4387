"""Pytest configuration and fixtures for FitVoice tests."""

import itertools
import threading
import time
import logging
from typing import Callable, List, Optional
from unittest.mock import Mock, patch

import numpy as np
import pytest
from pubsub import pub

from fitvoice.audio.base import AbstractAudioCapture
from fitvoice.audio.device import SharedAudioDevice
from fitvoice.exceptions import CaptureError, StreamError
from fitvoice.models.audio import AudioChunk, AudioFormat
from fitvoice.models.transcription import TranscriptionResult
from fitvoice.services.event_publisher import SessionEventPublisher, TOPIC_SUFFIXES
from fitvoice.services.session_controller import SessionController
from fitvoice.transcription.base import AbstractTranscriptionStream


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_topic_roots = itertools.count(1)


@pytest.fixture
def sample_audio_chunk():
    """Generate a sample audio chunk for testing."""
    # Generate 1024 samples of 16-bit audio (sine wave)
    sample_rate = 16000
    duration = 1024 / sample_rate  # ~0.064 seconds
    freq = 440  # A4 note

    t = np.linspace(0, duration, 1024, False)
    wave_data = np.sin(2 * np.pi * freq * t)

    # Convert to 16-bit integers
    audio_data = (wave_data * 32767).astype(np.int16)
    return audio_data.tobytes()


@pytest.fixture
def mock_pyaudio():
    """Mock PyAudio for testing without actual audio hardware."""
    with patch('pyaudio.PyAudio') as mock_pyaudio_class:
        mock_pyaudio_instance = Mock()
        mock_stream = Mock()

        # Silent audio at a realistic cadence so the capture thread does not spin
        def read(num_frames, exception_on_overflow=True):
            time.sleep(0.005)
            return b'\x00' * (num_frames * 2)

        mock_stream.read.side_effect = read
        mock_stream.start_stream.return_value = None
        mock_stream.stop_stream.return_value = None
        mock_stream.close.return_value = None

        # Configure mock PyAudio instance
        mock_pyaudio_instance.open.return_value = mock_stream
        mock_pyaudio_instance.terminate.return_value = None
        mock_pyaudio_instance.get_default_input_device_info.return_value = {
            "index": 0,
            "name": "Mock Microphone",
            "maxInputChannels": 1,
        }
        mock_pyaudio_instance.is_format_supported.return_value = True

        # Configure mock PyAudio class
        mock_pyaudio_class.return_value = mock_pyaudio_instance

        yield {
            'class': mock_pyaudio_class,
            'instance': mock_pyaudio_instance,
            'stream': mock_stream
        }


@pytest.fixture
def audio_device():
    """An isolated device claim so tests never contend on the process-wide one."""
    return SharedAudioDevice(name="test")


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout passes."""
    def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
    return _wait_until


# --- Fake boundary implementations ---


class FakeStreamHandle:
    def __init__(self, on_result, on_error):
        self.on_result = on_result
        self.on_error = on_error
        self.chunks: List[AudioChunk] = []
        self.dropped = 0
        self.finished = False
        self.canceled = False
        self.sequence = -1


class FakeTranscriptionStream(AbstractTranscriptionStream):
    """Scriptable stream: tests push results and errors through ``emit``/``fail``."""

    def __init__(self, open_error: Optional[Exception] = None):
        super().__init__()
        self.open_error = open_error
        self.handles: List[FakeStreamHandle] = []
        self.final_text_on_finish: Optional[str] = None
        self.cleaned_up = False

    def open(self, on_result, on_error) -> FakeStreamHandle:
        if self.open_error is not None:
            raise self.open_error
        handle = FakeStreamHandle(on_result, on_error)
        self.handles.append(handle)
        return handle

    def append(self, handle: FakeStreamHandle, chunk: AudioChunk) -> None:
        if handle.finished or handle.canceled:
            handle.dropped += 1
            return
        handle.chunks.append(chunk)

    def finish(self, handle: FakeStreamHandle) -> None:
        handle.finished = True
        if self.final_text_on_finish is not None:
            self.emit(self.final_text_on_finish, is_final=True, handle=handle)

    def cancel(self, handle: FakeStreamHandle) -> None:
        handle.canceled = True

    def cleanup(self) -> None:
        self.cleaned_up = True

    @property
    def handle(self) -> FakeStreamHandle:
        return self.handles[-1]

    def emit(self, text: str, is_final: bool = False, handle: Optional[FakeStreamHandle] = None) -> None:
        handle = handle or self.handle
        if handle.canceled:
            return
        handle.sequence += 1
        handle.on_result(TranscriptionResult(text=text, is_final=is_final, sequence=handle.sequence))

    def fail(self, error: StreamError, handle: Optional[FakeStreamHandle] = None) -> None:
        handle = handle or self.handle
        if handle.canceled:
            return
        handle.on_error(error)


class FakeCaptureHandle:
    def __init__(self, on_chunk, on_error):
        self.on_chunk = on_chunk
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0
        self.sequence = 0


class FakeAudioCapture(AbstractAudioCapture):
    """Scriptable microphone: tests push chunks and errors through ``push``/``fail``."""

    def __init__(self, open_error: Optional[Exception] = None):
        self.open_error = open_error
        self.handles: List[FakeCaptureHandle] = []
        self.open_calls = 0
        # Set ``open_gate`` to hold open() until the test releases it
        self.open_gate: Optional[threading.Event] = None
        self.open_started = threading.Event()
        self.format = AudioFormat()

    def open(self, on_chunk, on_error=None) -> FakeCaptureHandle:
        self.open_calls += 1
        self.open_started.set()
        if self.open_gate is not None:
            self.open_gate.wait(timeout=5.0)
        if self.open_error is not None:
            raise self.open_error
        handle = FakeCaptureHandle(on_chunk, on_error)
        self.handles.append(handle)
        return handle

    def close(self, handle: FakeCaptureHandle) -> None:
        handle.close_calls += 1
        handle.closed = True

    @property
    def handle(self) -> FakeCaptureHandle:
        return self.handles[-1]

    def push(self, data: bytes = b'\x00' * 2048) -> AudioChunk:
        handle = self.handle
        handle.sequence += 1
        chunk = AudioChunk(data=data, format=self.format, sequence_number=handle.sequence)
        handle.on_chunk(chunk)
        return chunk

    def fail(self, error: CaptureError) -> None:
        self.handle.on_error(error)


class EventRecorder:
    """Records every session event published under one topic root."""

    def __init__(self, publisher: SessionEventPublisher):
        self.publisher = publisher
        self.events = []
        self._condition = threading.Condition()
        for event_type in TOPIC_SUFFIXES:
            pub.subscribe(self.on_event, publisher.topic(event_type))

    def on_event(self, event) -> None:
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def of_type(self, event_type: type) -> list:
        with self._condition:
            return [e for e in self.events if isinstance(e, event_type)]

    def wait_for(self, event_type: type, count: int = 1, timeout: float = 2.0) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: len([e for e in self.events if isinstance(e, event_type)]) >= count,
                timeout,
            )

    def close(self) -> None:
        for event_type in TOPIC_SUFFIXES:
            pub.unsubscribe(self.on_event, self.publisher.topic(event_type))


@pytest.fixture
def publisher():
    """Publisher on a topic root unique to the test."""
    publisher = SessionEventPublisher(topic_root=f"session{next(_topic_roots)}")
    yield publisher
    publisher.shutdown()


@pytest.fixture
def recorder(publisher):
    recorder = EventRecorder(publisher)
    yield recorder
    recorder.close()


@pytest.fixture
def fake_capture():
    return FakeAudioCapture()


@pytest.fixture
def fake_stream():
    return FakeTranscriptionStream()


@pytest.fixture
def controller(fake_capture, fake_stream, publisher, recorder):
    """Controller wired to fakes, with events recorded."""
    controller = SessionController(
        audio_capture=fake_capture,
        transcriber=fake_stream,
        publisher=publisher,
        stop_grace_seconds=0.5,
    )
    yield controller
    controller.stop()
    controller.wait_until_idle(timeout=2.0)
