"""Unit tests for the SessionController state machine."""

import threading

import pytest

from fitvoice.exceptions import (
    CaptureError,
    CaptureErrorKind,
    StreamError,
    StreamErrorKind,
    SessionError,
    SessionErrorKind,
)
from fitvoice.models.events import (
    SessionStateChanged,
    TranscriptUpdated,
    SessionEnded,
    SessionStartFailed,
    AudioLevelChanged,
)
from fitvoice.models.session import SessionState, SessionEndReason


def start_active(controller, wait_until):
    session_id = controller.start()
    assert wait_until(lambda: controller.state is SessionState.ACTIVE)
    return session_id


@pytest.mark.unit
class TestSessionLifecycle:
    """Start, stream, finalize and stop."""

    def test_initial_state(self, controller):
        assert controller.state is SessionState.IDLE
        assert controller.session_id is None
        assert controller.transcript.current_text == ""
        assert controller.last_final_text is None

    def test_start_opens_stream_then_capture(self, controller, fake_capture, fake_stream,
                                            recorder, wait_until):
        session_id = start_active(controller, wait_until)

        assert len(fake_stream.handles) == 1
        assert fake_capture.open_calls == 1
        assert controller.session_id == session_id

        recorder.wait_for(SessionStateChanged, count=2)
        states = [e.state for e in recorder.of_type(SessionStateChanged)]
        assert states == [SessionState.STARTING, SessionState.ACTIVE]

    def test_partials_then_final(self, controller, fake_stream, fake_capture, recorder, wait_until):
        """Partials update the transcript; the final result ends the session."""
        start_active(controller, wait_until)

        fake_stream.emit("hel")
        fake_stream.emit("hello")
        fake_stream.emit("hello world", is_final=True)

        assert recorder.wait_for(SessionEnded)
        texts = [e.text for e in recorder.of_type(TranscriptUpdated)]
        assert texts == ["hel", "hello", "hello world"]

        ended = recorder.of_type(SessionEnded)
        assert len(ended) == 1
        assert ended[0].final_text == "hello world"
        assert ended[0].reason is SessionEndReason.FINAL_RESULT
        assert ended[0].transcript.is_final is True
        assert controller.state is SessionState.IDLE
        assert controller.last_final_text == "hello world"

        # Resources released on the way back to idle
        assert fake_stream.handle.canceled
        assert fake_capture.handle.closed

    def test_empty_partial_is_suppressed(self, controller, fake_stream, publisher, recorder, wait_until):
        start_active(controller, wait_until)

        fake_stream.emit("")
        fake_stream.emit("test")
        publisher.flush()

        texts = [e.text for e in recorder.of_type(TranscriptUpdated)]
        assert texts == ["test"]
        assert controller.transcript.current_text == "test"

    def test_empty_partial_keeps_last_good_text(self, controller, fake_stream, publisher, recorder, wait_until):
        start_active(controller, wait_until)

        fake_stream.emit("lift")
        fake_stream.emit("")
        fake_stream.emit("   ")
        publisher.flush()

        assert controller.transcript.current_text == "lift"
        assert [e.text for e in recorder.of_type(TranscriptUpdated)] == ["lift"]

    def test_empty_final_ends_with_last_partial(self, controller, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)

        fake_stream.emit("ten reps")
        fake_stream.emit("", is_final=True)

        assert recorder.wait_for(SessionEnded)
        assert recorder.of_type(SessionEnded)[0].final_text == "ten reps"

    def test_chunks_are_forwarded_to_stream(self, controller, fake_capture, fake_stream,
                                            recorder, wait_until, sample_audio_chunk):
        start_active(controller, wait_until)

        chunk = fake_capture.push(sample_audio_chunk)

        assert fake_stream.handle.chunks == [chunk]
        assert recorder.wait_for(AudioLevelChanged)
        level = recorder.of_type(AudioLevelChanged)[0]
        assert level.sequence_number == chunk.sequence_number
        assert level.peak_level > 0.9

    def test_new_session_after_end(self, controller, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        fake_stream.emit("first", is_final=True)
        assert recorder.wait_for(SessionEnded)

        start_active(controller, wait_until)
        assert controller.transcript.current_text == ""
        assert len(fake_stream.handles) == 2

        fake_stream.emit("second", is_final=True)
        assert recorder.wait_for(SessionEnded, count=2)
        assert [e.final_text for e in recorder.of_type(SessionEnded)] == ["first", "second"]


@pytest.mark.unit
class TestStartRejection:

    def test_double_start_is_rejected(self, controller, fake_capture, fake_stream, wait_until):
        start_active(controller, wait_until)

        with pytest.raises(SessionError) as exc_info:
            controller.start()

        assert exc_info.value.kind is SessionErrorKind.ALREADY_ACTIVE
        # First session untouched
        assert controller.state is SessionState.ACTIVE
        assert len(fake_stream.handles) == 1
        assert not fake_stream.handle.canceled
        assert fake_capture.open_calls == 1
        assert not fake_capture.handle.closed

    def test_start_rejected_while_starting(self, controller, fake_capture, wait_until):
        fake_capture.open_gate = threading.Event()
        controller.start()
        assert fake_capture.open_started.wait(2.0)

        with pytest.raises(SessionError) as exc_info:
            controller.start()
        assert exc_info.value.kind is SessionErrorKind.ALREADY_ACTIVE

        fake_capture.open_gate.set()
        assert wait_until(lambda: controller.state is SessionState.ACTIVE)

    def test_start_rejected_while_stopping(self, controller, fake_stream, wait_until):
        start_active(controller, wait_until)
        controller.stop()
        assert controller.state is SessionState.STOPPING

        with pytest.raises(SessionError):
            controller.start()


@pytest.mark.unit
class TestStartFailure:

    def test_capture_permission_denied(self, controller, fake_capture, fake_stream, recorder):
        fake_capture.open_error = CaptureError(CaptureErrorKind.PERMISSION_DENIED, "microphone access denied")

        controller.start()

        assert recorder.wait_for(SessionStartFailed)
        failure = recorder.of_type(SessionStartFailed)[0].error
        assert failure.kind is SessionErrorKind.START_FAILED
        assert failure.reason.kind is CaptureErrorKind.PERMISSION_DENIED
        assert controller.state is SessionState.IDLE

        # The stream opened first and was rolled back
        assert all(handle.canceled for handle in fake_stream.handles)
        assert recorder.of_type(SessionEnded) == []
        assert recorder.of_type(TranscriptUpdated) == []

    def test_stream_unavailable(self, controller, fake_capture, fake_stream, recorder):
        fake_stream.open_error = StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, "no credentials")

        controller.start()

        assert recorder.wait_for(SessionStartFailed)
        failure = recorder.of_type(SessionStartFailed)[0].error
        assert failure.reason.kind is StreamErrorKind.BACKEND_UNAVAILABLE
        assert controller.state is SessionState.IDLE
        assert fake_capture.open_calls == 0

    def test_stream_error_during_start(self, controller, fake_capture, fake_stream, recorder, wait_until):
        fake_capture.open_gate = threading.Event()
        controller.start()
        assert fake_capture.open_started.wait(2.0)

        fake_stream.fail(StreamError(StreamErrorKind.TIMEOUT, "deadline"))
        fake_capture.open_gate.set()

        assert recorder.wait_for(SessionStartFailed)
        assert recorder.of_type(SessionStartFailed)[0].error.reason.kind is StreamErrorKind.TIMEOUT
        assert controller.state is SessionState.IDLE
        assert fake_capture.handle.closed
        assert fake_stream.handle.canceled

    def test_unexpected_capture_exception_rolls_back(self, controller, fake_capture, fake_stream,
                                                     recorder, wait_until):
        fake_capture.open_error = RuntimeError("driver bug")

        controller.start()

        assert recorder.wait_for(SessionStartFailed)
        failure = recorder.of_type(SessionStartFailed)[0].error
        assert failure.kind is SessionErrorKind.START_FAILED
        assert failure.reason.kind is CaptureErrorKind.CONFIG_FAILED
        assert "driver bug" in str(failure.reason)
        assert controller.state is SessionState.IDLE
        assert fake_stream.handle.canceled

        # The controller accepts a new session afterwards
        fake_capture.open_error = None
        start_active(controller, wait_until)

    def test_unexpected_stream_exception_rolls_back(self, controller, fake_capture, fake_stream, recorder):
        fake_stream.open_error = RuntimeError("grpc channel bug")

        controller.start()

        assert recorder.wait_for(SessionStartFailed)
        failure = recorder.of_type(SessionStartFailed)[0].error
        assert failure.reason.kind is StreamErrorKind.BACKEND_UNAVAILABLE
        assert controller.state is SessionState.IDLE
        assert fake_capture.open_calls == 0

    def test_start_failed_follows_idle_state(self, controller, fake_capture, recorder):
        fake_capture.open_error = CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE)

        controller.start()

        assert recorder.wait_for(SessionStartFailed)
        last_state = recorder.of_type(SessionStateChanged)[-1]
        assert last_state.state is SessionState.IDLE
        assert recorder.events.index(last_state) < recorder.events.index(recorder.of_type(SessionStartFailed)[0])


@pytest.mark.unit
class TestStop:

    def test_stop_while_idle_is_noop(self, controller, publisher, recorder):
        controller.stop()
        publisher.flush()

        assert controller.state is SessionState.IDLE
        assert recorder.events == []

    def test_stop_during_start_cancels_open(self, controller, fake_capture, fake_stream,
                                            publisher, recorder, wait_until):
        fake_capture.open_gate = threading.Event()
        controller.start()
        assert fake_capture.open_started.wait(2.0)

        controller.stop()
        fake_capture.open_gate.set()

        assert controller.wait_until_idle(timeout=2.0)
        publisher.flush()

        assert fake_stream.handle.canceled
        assert fake_capture.handle.closed
        assert recorder.of_type(TranscriptUpdated) == []
        assert recorder.of_type(SessionEnded) == []
        assert recorder.of_type(SessionStartFailed) == []
        states = [e.state for e in recorder.of_type(SessionStateChanged)]
        assert states == [SessionState.STARTING, SessionState.IDLE]

    def test_stop_waits_for_final_result(self, controller, fake_capture, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        fake_stream.emit("three sets")

        controller.stop()

        assert controller.state is SessionState.STOPPING
        assert fake_stream.handle.finished
        # Capture keeps running until the stream confirms completion
        assert not fake_capture.handle.closed
        assert not fake_stream.handle.canceled

        fake_stream.emit("three sets of ten", is_final=True)

        assert recorder.wait_for(SessionEnded)
        ended = recorder.of_type(SessionEnded)[0]
        assert ended.reason is SessionEndReason.STOPPED
        assert ended.final_text == "three sets of ten"
        assert fake_capture.handle.closed
        assert controller.state is SessionState.IDLE

    def test_stop_with_immediate_final(self, controller, fake_stream, recorder, wait_until):
        fake_stream.final_text_on_finish = "done"
        start_active(controller, wait_until)

        controller.stop()

        assert recorder.wait_for(SessionEnded)
        ended = recorder.of_type(SessionEnded)
        assert len(ended) == 1
        assert ended[0].final_text == "done"
        assert ended[0].reason is SessionEndReason.STOPPED

    def test_stop_grace_period_forces_teardown(self, controller, fake_capture, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        fake_stream.emit("partial only")

        controller.stop()

        # No confirmation from the stream; the 0.5s grace period ends the session
        assert recorder.wait_for(SessionEnded, timeout=3.0)
        ended = recorder.of_type(SessionEnded)[0]
        assert ended.reason is SessionEndReason.GRACE_TIMEOUT
        assert ended.final_text == "partial only"
        assert fake_stream.handle.canceled
        assert fake_capture.handle.closed

    def test_chunks_after_finish_are_dropped(self, controller, fake_capture, fake_stream, wait_until):
        start_active(controller, wait_until)
        controller.stop()

        fake_capture.push()

        assert fake_stream.handle.chunks == []
        assert fake_stream.handle.dropped == 1

    def test_repeated_stop_is_harmless(self, controller, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        controller.stop()
        controller.stop()
        fake_stream.emit("ok", is_final=True)

        assert recorder.wait_for(SessionEnded)
        assert controller.wait_until_idle(timeout=2.0)
        controller.stop()
        assert len(recorder.of_type(SessionEnded)) == 1


@pytest.mark.unit
class TestActiveErrors:
    """Every failure source drains through the same teardown."""

    def test_capture_error_ends_session(self, controller, fake_capture, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        fake_stream.emit("squat")

        fake_capture.fail(CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, "unplugged"))

        assert recorder.wait_for(SessionEnded)
        ended = recorder.of_type(SessionEnded)
        assert len(ended) == 1
        assert ended[0].reason is SessionEndReason.CAPTURE_ERROR
        assert ended[0].error.kind is CaptureErrorKind.DEVICE_UNAVAILABLE
        assert ended[0].final_text == "squat"
        assert controller.state is SessionState.IDLE
        assert fake_capture.handle.closed
        assert fake_stream.handle.canceled

    def test_stream_error_ends_session(self, controller, fake_capture, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        fake_stream.emit("bench")

        fake_stream.fail(StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, "503"))

        assert recorder.wait_for(SessionEnded)
        ended = recorder.of_type(SessionEnded)
        assert len(ended) == 1
        assert ended[0].reason is SessionEndReason.STREAM_ERROR
        assert ended[0].final_text == "bench"
        assert fake_capture.handle.closed
        assert fake_stream.handle.canceled

    def test_stream_error_while_stopping(self, controller, fake_stream, recorder, wait_until):
        start_active(controller, wait_until)
        controller.stop()

        fake_stream.fail(StreamError(StreamErrorKind.TIMEOUT))

        assert recorder.wait_for(SessionEnded)
        ended = recorder.of_type(SessionEnded)[0]
        assert ended.reason is SessionEndReason.STREAM_ERROR
        assert ended.error.kind is StreamErrorKind.TIMEOUT

    def test_both_resources_failing_end_once(self, controller, fake_capture, fake_stream,
                                             publisher, recorder, wait_until):
        start_active(controller, wait_until)

        fake_stream.fail(StreamError(StreamErrorKind.BACKEND_UNAVAILABLE))
        fake_capture.fail(CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE))

        assert recorder.wait_for(SessionEnded)
        assert controller.wait_until_idle(timeout=2.0)
        publisher.flush()
        assert len(recorder.of_type(SessionEnded)) == 1
        assert fake_capture.handle.close_calls == 1

    def test_late_results_are_ignored(self, controller, fake_stream, publisher, recorder, wait_until):
        start_active(controller, wait_until)
        stale = fake_stream.handle
        fake_stream.emit("final words", is_final=True)
        assert recorder.wait_for(SessionEnded)

        # A misbehaving backend calling back after cancel
        stale.on_result(fake_stream_result("ghost", 99))
        publisher.flush()

        assert [e.text for e in recorder.of_type(TranscriptUpdated)] == ["final words"]
        assert controller.last_final_text == "final words"


@pytest.mark.unit
@pytest.mark.parametrize("texts", [
    ["", "", ""],
    ["a", "", "ab", "", ""],
    ["", "squat", " ", "squat ten", ""],
    ["x", "\n", "xy", "xyz", "", "xyz!"],
])
def test_empty_results_never_change_text(texts, controller, fake_stream, publisher, wait_until):
    start_active(controller, wait_until)

    expected = ""
    for text in texts:
        fake_stream.emit(text)
        if text.strip():
            expected = text
        assert controller.transcript.current_text == expected


@pytest.mark.unit
def test_shutdown_stops_active_session(fake_capture, fake_stream, publisher, recorder, wait_until):
    from fitvoice.services.session_controller import SessionController

    controller = SessionController(fake_capture, fake_stream, publisher=publisher, stop_grace_seconds=0.2)
    start_active(controller, wait_until)

    assert controller.shutdown(timeout=2.0)
    assert controller.state is SessionState.IDLE
    assert fake_capture.handle.closed
    assert fake_stream.cleaned_up
    assert len(recorder.of_type(SessionEnded)) == 1


def fake_stream_result(text, sequence):
    from fitvoice.models.transcription import TranscriptionResult
    return TranscriptionResult(text=text, is_final=False, sequence=sequence)
