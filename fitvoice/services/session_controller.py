"""Recording session lifecycle controller.

Owns one microphone capture and one transcription stream per session and
drives them through a single state machine:

    IDLE --start()--> STARTING --(both open)--> ACTIVE --stop()/final/error--> STOPPING --> IDLE

Capture and stream callbacks arrive on their own threads. Every read and write
of the state, the transcript and the session record happens under one lock;
the controller never calls into the capture or the stream while holding it.
Opening and closing resources runs on short-lived worker threads so that
``start()`` and ``stop()`` never block the caller. Outcomes are observed
through published events.
"""

import logging
import random
import string
import threading
from datetime import datetime
from typing import Optional

from ..audio.base import AbstractAudioCapture
from ..exceptions import (
    FitVoiceError,
    CaptureError,
    CaptureErrorKind,
    StreamError,
    StreamErrorKind,
    SessionError,
    SessionErrorKind,
)
from ..models.audio import AudioChunk
from ..models.events import (
    SessionStateChanged,
    TranscriptUpdated,
    SessionEnded,
    SessionStartFailed,
    AudioLevelChanged,
)
from ..models.session import SessionState, SessionEndReason
from ..models.transcription import Transcript, TranscriptionResult
from ..transcription.base import AbstractTranscriptionStream
from .event_publisher import SessionEventPublisher

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Timestamp-based session ID with a random suffix (YYYYMMDD_HHMMSS_xxxx)."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"{timestamp}_{random_suffix}"


class _Session:
    """Resources and bookkeeping for one start-to-stop attempt."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.stream_handle = None
        self.capture_handle = None

        self.cancel_requested = threading.Event()
        self.start_error: Optional[FitVoiceError] = None
        self.stop_timer: Optional[threading.Timer] = None

        self.teardown_started = False
        self.end_reason: Optional[SessionEndReason] = None
        self.end_error: Optional[FitVoiceError] = None
        self.chunks_forwarded = 0


class SessionController:
    """State machine coordinating microphone capture and streaming transcription."""

    def __init__(self,
                 audio_capture: AbstractAudioCapture,
                 transcriber: AbstractTranscriptionStream,
                 publisher: Optional[SessionEventPublisher] = None,
                 stop_grace_seconds: float = 3.0):
        """Initialize session controller.

        Args:
            audio_capture: Microphone source
            transcriber: Streaming recognition backend
            publisher: Observer event publisher; a default one is created if None
            stop_grace_seconds: How long a user stop waits for the stream to confirm
                completion before capture and stream are force-closed
        """
        self.audio_capture = audio_capture
        self.transcriber = transcriber
        self.publisher = publisher or SessionEventPublisher()
        self.stop_grace_seconds = stop_grace_seconds

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._state = SessionState.IDLE
        self._session: Optional[_Session] = None
        self._transcript = Transcript()
        self._last_final_text: Optional[str] = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def session_id(self) -> Optional[str]:
        with self._lock:
            return self._session.session_id if self._session else None

    @property
    def transcript(self) -> Transcript:
        """Snapshot of the running transcript."""
        with self._lock:
            return self._transcript.copy()

    @property
    def last_final_text(self) -> Optional[str]:
        """Final text of the most recently ended session, for downstream consumers."""
        with self._lock:
            return self._last_final_text

    def start(self) -> str:
        """Request a new session.

        Returns:
            The new session ID

        Raises:
            SessionError: ``ALREADY_ACTIVE`` if a session is starting, active or stopping
        """
        with self._lock:
            if self._state is not SessionState.IDLE:
                logger.warning(f"Start rejected: session {self._session.session_id} is {self._state.value}")
                raise SessionError(SessionErrorKind.ALREADY_ACTIVE)

            session = _Session(generate_session_id())
            self._session = session
            self._transcript.reset()
            self._set_state(SessionState.STARTING, session)

        opener = threading.Thread(target=self._open_resources, args=(session,), daemon=True)
        opener.name = f"SessionOpen-{session.session_id}"
        opener.start()
        return session.session_id

    def stop(self) -> None:
        """Request the current session to stop. No-op when idle or already stopping."""
        with self._lock:
            session = self._session
            if self._state is SessionState.IDLE:
                logger.debug("Stop ignored: no session")
                return
            if self._state is SessionState.STARTING:
                logger.info(f"Stop during start of {session.session_id}; canceling open")
                session.cancel_requested.set()
                return
            if self._state is SessionState.STOPPING:
                return

            session.end_reason = SessionEndReason.STOPPED
            self._set_state(SessionState.STOPPING, session)
            session.stop_timer = threading.Timer(
                self.stop_grace_seconds, self._on_stop_grace_expired, args=(session,))
            session.stop_timer.daemon = True
            session.stop_timer.start()
            stream_handle = session.stream_handle

        logger.info(f"Stop requested for {session.session_id}; waiting up to "
                    f"{self.stop_grace_seconds}s for the stream to complete")
        self.transcriber.finish(stream_handle)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the controller is idle. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._state is SessionState.IDLE, timeout)

    def shutdown(self, timeout: float = 5.0) -> bool:
        """Stop any session, wait for idle, then stop event delivery.

        Returns:
            True if the controller reached idle within the timeout
        """
        logger.info("Shutting down session controller...")
        self.stop()
        idle = self.wait_until_idle(timeout)
        if not idle:
            logger.warning(f"Session still {self.state.value} after {timeout}s")
        self.publisher.flush()
        self.publisher.shutdown()
        self.transcriber.cleanup()
        logger.info("Session controller shutdown complete")
        return idle

    # --- Starting ---

    def _open_resources(self, session: _Session) -> None:
        """Worker thread: open the stream, then the capture wired into it."""
        try:
            stream_handle = self.transcriber.open(
                on_result=lambda result: self._on_result(session, result),
                on_error=lambda error: self._on_stream_error(session, error),
            )
        except StreamError as e:
            logger.error(f"Transcription stream failed to open for {session.session_id}: {e}")
            self._finish_start(session, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error opening transcription stream for {session.session_id}: {e}",
                         exc_info=True)
            self._finish_start(session, StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, str(e)))
            return

        with self._lock:
            session.stream_handle = stream_handle
        if session.cancel_requested.is_set():
            self._finish_start(session)
            return

        try:
            capture_handle = self.audio_capture.open(
                on_chunk=lambda chunk: self._on_chunk(session, chunk),
                on_error=lambda error: self._on_capture_error(session, error),
            )
        except CaptureError as e:
            logger.error(f"Audio capture failed to open for {session.session_id}: {e}")
            self._finish_start(session, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error opening audio capture for {session.session_id}: {e}",
                         exc_info=True)
            self._finish_start(session, CaptureError(CaptureErrorKind.CONFIG_FAILED, str(e)))
            return

        with self._lock:
            session.capture_handle = capture_handle
        self._finish_start(session)

    def _finish_start(self, session: _Session, error: Optional[FitVoiceError] = None) -> None:
        with self._lock:
            if error is None:
                error = session.start_error
            canceled = session.cancel_requested.is_set()
            if error is None and not canceled:
                self._set_state(SessionState.ACTIVE, session)
                logger.info(f"Session {session.session_id} active")
                return

        # Roll back whatever opened before going idle
        self._release_resources(session)

        with self._lock:
            self._session = None
            self._set_state(SessionState.IDLE, session)
            if canceled:
                logger.info(f"Session {session.session_id} canceled during start")
            else:
                failure = SessionError(SessionErrorKind.START_FAILED, reason=error)
                self.publisher.publish(SessionStartFailed(session_id=session.session_id, error=failure))
            self._idle.notify_all()

    # --- Producers ---

    def _on_chunk(self, session: _Session, chunk: AudioChunk) -> None:
        """Capture thread: forward audio straight into the stream."""
        stream_handle = session.stream_handle
        if stream_handle is None or session.teardown_started:
            return
        self.transcriber.append(stream_handle, chunk)
        session.chunks_forwarded += 1
        self.publisher.publish(AudioLevelChanged(
            session_id=session.session_id,
            peak_level=chunk.peak_level(),
            sequence_number=chunk.sequence_number,
        ))

    def _on_result(self, session: _Session, result: TranscriptionResult) -> None:
        with self._lock:
            if self._session is not session or session.teardown_started:
                logger.debug(f"Dropping stale result {result.sequence} for {session.session_id}")
                return

            if self._state is SessionState.STARTING:
                if result.is_final:
                    session.start_error = StreamError(StreamErrorKind.BACKEND_UNAVAILABLE,
                                                      "stream completed before capture started")
                return

            if self._transcript.apply(result):
                self.publisher.publish(TranscriptUpdated(
                    session_id=session.session_id,
                    text=self._transcript.current_text,
                    is_final=result.is_final,
                    sequence=result.sequence,
                ))

            if not result.is_final:
                return
            logger.info(f"Final result for {session.session_id}: '{self._transcript.current_text}'")
            teardown = self._begin_teardown(session, SessionEndReason.FINAL_RESULT)

        if teardown:
            self._spawn_teardown(session)

    def _on_stream_error(self, session: _Session, error: StreamError) -> None:
        self._on_resource_error(session, error, SessionEndReason.STREAM_ERROR)

    def _on_capture_error(self, session: _Session, error: CaptureError) -> None:
        self._on_resource_error(session, error, SessionEndReason.CAPTURE_ERROR)

    def _on_resource_error(self, session: _Session, error: FitVoiceError, reason: SessionEndReason) -> None:
        with self._lock:
            if self._session is not session or session.teardown_started:
                logger.debug(f"Ignoring {reason.value} for finished session {session.session_id}: {error}")
                return

            if self._state is SessionState.STARTING:
                session.start_error = error
                return

            logger.error(f"Session {session.session_id} ending on {reason.value}: {error}")
            teardown = self._begin_teardown(session, reason, error)

        if teardown:
            self._spawn_teardown(session)

    def _on_stop_grace_expired(self, session: _Session) -> None:
        with self._lock:
            if self._session is not session or session.teardown_started:
                return
            logger.warning(f"Stream for {session.session_id} did not complete within "
                           f"{self.stop_grace_seconds}s; forcing teardown")
            teardown = self._begin_teardown(session, SessionEndReason.GRACE_TIMEOUT)

        if teardown:
            self._spawn_teardown(session)

    # --- Stopping ---

    def _begin_teardown(self, session: _Session, reason: SessionEndReason,
                        error: Optional[FitVoiceError] = None) -> bool:
        """Mark the single teardown of a session. Caller holds the lock."""
        if session.teardown_started:
            return False
        session.teardown_started = True

        # A final result that answers a user stop still counts as a user stop
        if not (reason is SessionEndReason.FINAL_RESULT and session.end_reason is SessionEndReason.STOPPED):
            session.end_reason = reason
        session.end_error = error

        if session.stop_timer is not None:
            session.stop_timer.cancel()
        self._set_state(SessionState.STOPPING, session)
        return True

    def _spawn_teardown(self, session: _Session) -> None:
        # Callbacks arrive on the threads that teardown has to join
        worker = threading.Thread(target=self._teardown, args=(session,), daemon=True)
        worker.name = f"SessionTeardown-{session.session_id}"
        worker.start()

    def _teardown(self, session: _Session) -> None:
        self._release_resources(session)

        with self._lock:
            transcript = self._transcript.copy()
            self._last_final_text = transcript.current_text
            self._session = None
            self._set_state(SessionState.IDLE, session)
            self.publisher.publish(SessionEnded(
                session_id=session.session_id,
                final_text=transcript.current_text,
                transcript=transcript,
                reason=session.end_reason,
                error=session.end_error,
            ))
            self._transcript.reset()
            self._idle.notify_all()

        logger.info(f"Session {session.session_id} ended ({session.end_reason.value}), "
                    f"{session.chunks_forwarded} chunks streamed")

    def _release_resources(self, session: _Session) -> None:
        """Cancel the stream and close the capture; both calls are idempotent."""
        if session.stream_handle is not None:
            try:
                self.transcriber.cancel(session.stream_handle)
            except Exception as e:
                logger.error(f"Error canceling transcription stream for {session.session_id}: {e}",
                             exc_info=True)
        if session.capture_handle is not None:
            try:
                self.audio_capture.close(session.capture_handle)
            except Exception as e:
                logger.error(f"Error closing audio capture for {session.session_id}: {e}",
                             exc_info=True)

    def _set_state(self, new_state: SessionState, session: Optional[_Session]) -> None:
        """Transition and publish. Caller holds the lock."""
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        session_id = session.session_id if session else None
        logger.info(f"Session {session_id}: {previous.value} -> {new_state.value}")
        self.publisher.publish(SessionStateChanged(
            session_id=session_id,
            state=new_state,
            previous_state=previous,
        ))
