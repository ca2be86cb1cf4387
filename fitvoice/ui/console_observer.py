"""Console observer that renders session events with rich."""

import logging
from typing import Optional

from pubsub import pub
from rich.console import Console
from rich.panel import Panel

from ..exceptions import SubmitError
from ..models.events import (
    SessionStateChanged,
    TranscriptUpdated,
    SessionEnded,
    SessionStartFailed,
    AudioLevelChanged,
)
from ..models.session import SessionState
from ..services.event_publisher import SessionEventPublisher
from ..services.submission import TranscriptSubmitter

logger = logging.getLogger(__name__)

_STATE_LABELS = {
    SessionState.IDLE: ("⏹️  STOPPED", "bold yellow"),
    SessionState.STARTING: ("⏳ STARTING", "bold blue"),
    SessionState.ACTIVE: ("🔴 RECORDING", "bold red"),
    SessionState.STOPPING: ("⏸️  FINISHING", "bold magenta"),
}


class ConsoleSessionObserver:
    """Prints state, transcript and level updates; optionally submits final text."""

    def __init__(self, publisher: SessionEventPublisher,
                 submitter: Optional[TranscriptSubmitter] = None,
                 console: Optional[Console] = None):
        self.publisher = publisher
        self.submitter = submitter
        self.console = console or Console()
        self.peak_level = 0.0

        # pubsub keeps weak references; the observer must outlive the session
        pub.subscribe(self.on_state_changed, publisher.topic(SessionStateChanged))
        pub.subscribe(self.on_transcript_updated, publisher.topic(TranscriptUpdated))
        pub.subscribe(self.on_session_ended, publisher.topic(SessionEnded))
        pub.subscribe(self.on_start_failed, publisher.topic(SessionStartFailed))
        pub.subscribe(self.on_audio_level, publisher.topic(AudioLevelChanged))

    def on_state_changed(self, event: SessionStateChanged) -> None:
        label, style = _STATE_LABELS[event.state]
        self.console.print(label, style=style)

    def on_transcript_updated(self, event: TranscriptUpdated) -> None:
        level_bar = "█" * int(self.peak_level * 20)
        self.console.print(f"[{level_bar:<20}] {event.text}", style="bold" if event.is_final else None)

    def on_audio_level(self, event: AudioLevelChanged) -> None:
        self.peak_level = event.peak_level

    def on_start_failed(self, event: SessionStartFailed) -> None:
        self.console.print(f"❌ Could not start recording: {event.error.reason}", style="red")

    def on_session_ended(self, event: SessionEnded) -> None:
        self.peak_level = 0.0
        title = f"Session {event.session_id} ({event.reason.value})"
        self.console.print(Panel(event.final_text or "(no speech recognized)", title=title))
        if event.error is not None:
            self.console.print(f"⚠️  Ended early: {event.error}", style="yellow")

        if self.submitter is None:
            return
        try:
            self.submitter.submit(event.final_text)
        except SubmitError as e:
            logger.warning(f"Transcript not submitted: {e}")
            self.console.print(f"Nothing to submit: {e}", style="dim")

    def close(self) -> None:
        pub.unsubscribe(self.on_state_changed, self.publisher.topic(SessionStateChanged))
        pub.unsubscribe(self.on_transcript_updated, self.publisher.topic(TranscriptUpdated))
        pub.unsubscribe(self.on_session_ended, self.publisher.topic(SessionEnded))
        pub.unsubscribe(self.on_start_failed, self.publisher.topic(SessionStartFailed))
        pub.unsubscribe(self.on_audio_level, self.publisher.topic(AudioLevelChanged))
