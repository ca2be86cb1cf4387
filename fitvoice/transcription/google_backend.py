"""Google Speech-to-Text streaming transcription backend."""

import itertools
import logging
import queue
from enum import Enum
from threading import Lock, Thread, current_thread
from typing import Iterator, Optional

from google.api_core import exceptions as gax_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import speech
from google.oauth2 import service_account

from ..exceptions import StreamError, StreamErrorKind
from ..models.audio import AudioChunk
from ..models.transcription import TranscriptionResult
from .base import AbstractTranscriptionStream, ResultCallback, StreamErrorCallback

logger = logging.getLogger(__name__)

_stream_ids = itertools.count(1)


class StreamHandleState(Enum):
    OPEN = "open"            # Accepting audio
    FINISHING = "finishing"  # End of audio signalled, results still pending
    CLOSED = "closed"


class GoogleStreamHandle:
    """One streaming_recognize call and the audio queue feeding it."""

    def __init__(self, stream_id: str, on_result: ResultCallback, on_error: StreamErrorCallback):
        self.stream_id = stream_id
        self.on_result = on_result
        self.on_error = on_error

        self.audio_queue: "queue.Queue[Optional[AudioChunk]]" = queue.Queue()
        self.lock = Lock()
        self.state = StreamHandleState.OPEN
        self.canceled = False
        self.completed = False  # Final result or error delivered
        self.responses = None
        self.thread: Optional[Thread] = None

        self.sequence = -1
        self.chunks_sent = 0


class GoogleStreamingTranscriber(AbstractTranscriptionStream):
    """Google Speech-to-Text streaming recognition with interim results."""

    def __init__(self,
                 credentials_path: Optional[str] = None,
                 sample_rate: int = 16000,
                 language: str = "en-US",
                 model: str = "latest_long",
                 use_enhanced: bool = True,
                 enable_automatic_punctuation: bool = True,
                 interim_results: bool = True,
                 single_utterance: bool = True,
                 stream_timeout: float = 300.0):
        """Initialize Google streaming backend.

        Args:
            credentials_path: Service account JSON file; None uses application default credentials
            sample_rate: Sample rate of the PCM audio that will be appended
            language: Language code (e.g., 'en-US', 'pl-PL')
            model: Recognition model name
            use_enhanced: Whether to use the enhanced model variant
            enable_automatic_punctuation: Enable automatic punctuation
            interim_results: Report partial hypotheses while the user speaks
            single_utterance: End the stream when the backend detects the end of speech
            stream_timeout: Deadline for one streaming call in seconds
        """
        super().__init__(language)
        self.credentials_path = credentials_path
        self.use_enhanced = use_enhanced
        self.enable_automatic_punctuation = enable_automatic_punctuation
        self.stream_timeout = stream_timeout
        self.client: Optional[speech.SpeechClient] = None
        self.project_id = None
        self.service_name = "Google Speech-to-Text"

        self.config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
            sample_rate_hertz=sample_rate,
            language_code=self.language,
            model=model,
            use_enhanced=self.use_enhanced,
            enable_automatic_punctuation=self.enable_automatic_punctuation,
        )
        self.streaming_config = speech.StreamingRecognitionConfig(
            config=self.config,
            interim_results=interim_results,
            single_utterance=single_utterance,
        )

        self._lock = Lock()
        self._active_handle: Optional[GoogleStreamHandle] = None

    def initialize(self) -> bool:
        """Create the Speech client, loading credentials if a file was configured."""
        try:
            if self.credentials_path:
                logger.info(f"Loading Google credentials from: {self.credentials_path}")
                credentials = service_account.Credentials.from_service_account_file(self.credentials_path)
                self.project_id = credentials.project_id
                self.client = speech.SpeechClient(credentials=credentials)
            else:
                logger.info("Using Google application default credentials")
                self.client = speech.SpeechClient()
        except (OSError, ValueError, auth_exceptions.GoogleAuthError) as e:
            raise StreamError(StreamErrorKind.BACKEND_UNAVAILABLE,
                              f"cannot create Speech client: {e}") from e

        logger.info(f"Google Speech-to-Text streaming backend initialized (project: {self.project_id})")
        return True

    def open(self, on_result: ResultCallback, on_error: StreamErrorCallback) -> GoogleStreamHandle:
        """Open a streaming_recognize call on a dedicated response thread."""
        with self._lock:
            previous = self._active_handle
        if previous is not None and previous.state is not StreamHandleState.CLOSED:
            logger.warning(f"Canceling still-open stream {previous.stream_id} before opening a new one")
            self.cancel(previous)

        if self.client is None:
            self.initialize()

        handle = GoogleStreamHandle(f"stream_{next(_stream_ids)}", on_result, on_error)
        handle.thread = Thread(target=self._run_stream, args=(handle,), daemon=True)
        handle.thread.name = f"TranscriptionStream-{handle.stream_id}"

        with self._lock:
            self._active_handle = handle
        handle.thread.start()

        logger.info(f"Opened transcription stream {handle.stream_id} ({self.language})")
        return handle

    def append(self, handle: GoogleStreamHandle, chunk: AudioChunk) -> None:
        with handle.lock:
            if handle.state is not StreamHandleState.OPEN:
                logger.debug(f"Dropping chunk {chunk.sequence_number} for {handle.stream_id} "
                             f"({handle.state.value})")
                return
            handle.audio_queue.put(chunk)
            handle.chunks_sent += 1

    def finish(self, handle: GoogleStreamHandle) -> None:
        with handle.lock:
            if handle.state is not StreamHandleState.OPEN:
                return
            handle.state = StreamHandleState.FINISHING
        handle.audio_queue.put(None)
        logger.info(f"End of audio signalled for {handle.stream_id} after {handle.chunks_sent} chunks")

    def cancel(self, handle: GoogleStreamHandle) -> None:
        with handle.lock:
            if handle.canceled:
                return
            handle.canceled = True
            handle.state = StreamHandleState.CLOSED
            responses = handle.responses

        handle.audio_queue.put(None)
        if responses is not None:
            responses.cancel()

        thread = handle.thread
        if thread is not None and thread is not current_thread() and thread.is_alive():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning(f"Response thread for {handle.stream_id} did not stop cleanly")

        with self._lock:
            if self._active_handle is handle:
                self._active_handle = None
        logger.info(f"Transcription stream {handle.stream_id} canceled")

    def cleanup(self) -> None:
        """Cancel any open stream and drop the client."""
        with self._lock:
            handle = self._active_handle
        if handle is not None:
            self.cancel(handle)
        self.client = None

    def _request_stream(self, handle: GoogleStreamHandle) -> Iterator[speech.StreamingRecognizeRequest]:
        while True:
            chunk = handle.audio_queue.get()
            if chunk is None:
                return
            yield speech.StreamingRecognizeRequest(audio_content=chunk.data)

    def _run_stream(self, handle: GoogleStreamHandle) -> None:
        """Response loop: maps Google responses to results until final, error or cancel."""
        try:
            responses = self.client.streaming_recognize(
                config=self.streaming_config,
                requests=self._request_stream(handle),
                timeout=self.stream_timeout,
            )
            with handle.lock:
                handle.responses = responses
                canceled = handle.canceled
            if canceled:
                responses.cancel()
                return

            for response in responses:
                if (response.speech_event_type ==
                        speech.StreamingRecognizeResponse.SpeechEventType.END_OF_SINGLE_UTTERANCE):
                    logger.debug(f"End of utterance detected on {handle.stream_id}")
                    self.finish(handle)

                result = self.__extract_transcription_result(handle, response)
                if result is None:
                    continue
                self._deliver_result(handle, result)
                if result.is_final:
                    break
            else:
                # Stream closed without a final result; report completion anyway
                if not handle.completed:
                    handle.sequence += 1
                    self._deliver_result(handle, TranscriptionResult(
                        text="",
                        is_final=True,
                        sequence=handle.sequence,
                        service=self.service_name,
                        language=self.language,
                    ))
        except gax_exceptions.DeadlineExceeded as e:
            logger.error(f"Google STT stream deadline exceeded for {handle.stream_id}")
            self._deliver_error(handle, StreamError(StreamErrorKind.TIMEOUT, str(e)))
        except gax_exceptions.Cancelled as e:
            if not handle.canceled:
                logger.error(f"Google STT stream {handle.stream_id} canceled by the backend")
                self._deliver_error(handle, StreamError(StreamErrorKind.CANCELED, str(e)))
        except gax_exceptions.GoogleAPICallError as e:
            logger.error(f"Google STT API call error for {handle.stream_id}: {e}")
            self._deliver_error(handle, StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, str(e)))
        except auth_exceptions.GoogleAuthError as e:
            logger.error(f"Google STT authentication failed for {handle.stream_id}: {e}")
            self._deliver_error(handle, StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, str(e)))
        except Exception as e:
            logger.error(f"Unexpected error in transcription stream {handle.stream_id}: {e}", exc_info=True)
            self._deliver_error(handle, StreamError(StreamErrorKind.BACKEND_UNAVAILABLE, str(e)))
        finally:
            self._mark_closed(handle)

    def __extract_transcription_result(self, handle: GoogleStreamHandle,
                                       response: speech.StreamingRecognizeResponse) -> Optional[TranscriptionResult]:
        if not response.results:
            return None

        # A response carries the stable fragment first, then the volatile tail
        fragments = [r.alternatives[0].transcript for r in response.results if r.alternatives]
        is_final = any(r.is_final for r in response.results)
        first = response.results[0]
        confidence = first.alternatives[0].confidence if first.alternatives else 0.0

        handle.sequence += 1
        text = "".join(fragments).strip()
        logger.debug(f"{handle.stream_id} result {handle.sequence}: '{text}' "
                     f"(final={is_final}, stability={first.stability:.2f})")
        return TranscriptionResult(
            text=text,
            is_final=is_final,
            sequence=handle.sequence,
            confidence=confidence,
            stability=first.stability,
            service=self.service_name,
            language=self.language,
        )

    def _deliver_result(self, handle: GoogleStreamHandle, result: TranscriptionResult) -> None:
        # Delivered under the handle lock so cancel() cannot return mid-callback
        with handle.lock:
            if handle.canceled or handle.completed:
                return
            if result.is_final:
                handle.completed = True
            handle.on_result(result)

    def _deliver_error(self, handle: GoogleStreamHandle, error: StreamError) -> None:
        with handle.lock:
            if handle.canceled or handle.completed:
                return
            handle.completed = True
            handle.on_error(error)

    def _mark_closed(self, handle: GoogleStreamHandle) -> None:
        with handle.lock:
            handle.state = StreamHandleState.CLOSED
        # Unblocks the request generator if grpc is still pulling audio
        handle.audio_queue.put(None)
