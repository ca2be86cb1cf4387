"""Session event publisher for pub/sub delivery to observers."""

import logging
import queue
import threading
from typing import Any, Callable, Optional

from pubsub import pub

from ..models.events import (
    SessionStateChanged,
    TranscriptUpdated,
    SessionEnded,
    SessionStartFailed,
    AudioLevelChanged,
)

logger = logging.getLogger(__name__)

# Subtopic of the configured root, per event type
TOPIC_SUFFIXES = {
    SessionStateChanged: "state_changed",
    TranscriptUpdated: "transcript_updated",
    SessionEnded: "ended",
    SessionStartFailed: "start_failed",
    AudioLevelChanged: "audio_level",
}

Dispatcher = Callable[[Callable[[], None]], None]


class SessionEventPublisher:
    """Publishes session events using pubsub.pub, in submission order.

    ``publish`` only enqueues, so it is safe to call while holding the
    controller's state lock. A single dispatcher thread drains the queue. If a
    ``dispatch`` hook is given, each send is handed to it instead of running on
    the dispatcher thread, e.g. to marshal delivery onto a GUI main loop.
    """

    def __init__(self, topic_root: str = "session", dispatch: Optional[Dispatcher] = None):
        """Initialize session event publisher.

        Args:
            topic_root: Root pub/sub topic; events go to ``<root>.<event>``
            dispatch: Optional hook that runs a send callable on the observer's context
        """
        self.topic_root = topic_root
        self.dispatch = dispatch

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stopped = False
        self._pending = 0
        self._drained = threading.Condition()
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True)
        self._thread.name = "SessionEventDispatcher"
        self._thread.start()
        logger.info(f"SessionEventPublisher initialized with topic root: {topic_root}")

    def topic(self, event_type: type) -> str:
        """Full topic name for an event class."""
        return f"{self.topic_root}.{TOPIC_SUFFIXES[event_type]}"

    def publish(self, event: Any) -> None:
        """Queue an event for delivery to its topic.

        Args:
            event: One of the session event dataclasses
        """
        if self._stopped:
            logger.warning(f"Publisher stopped; dropping {type(event).__name__}")
            return
        with self._drained:
            self._pending += 1
        self._queue.put(event)

    @property
    def pending(self) -> int:
        """Number of published events not yet handed off."""
        with self._drained:
            return self._pending

    def flush(self, timeout: float = 2.0) -> bool:
        """Wait until every queued event has been handed off.

        Returns:
            True if the queue drained before the timeout
        """
        with self._drained:
            drained = self._drained.wait_for(lambda: self._pending == 0, timeout)
            if not drained:
                logger.warning(f"{self._pending} session events still pending after {timeout}s")
        return drained

    def shutdown(self, timeout: float = 2.0) -> None:
        """Deliver what is queued, then stop the dispatcher thread."""
        if self._stopped:
            return
        self._stopped = True
        self._queue.put(None)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Session event dispatcher did not stop cleanly")

    def _dispatch_loop(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                logger.debug("Session event dispatcher received sentinel, exiting.")
                break
            try:
                self._send(event)
            except Exception as e:
                logger.error(f"Observer failed handling {type(event).__name__}: {e}", exc_info=True)
            finally:
                with self._drained:
                    self._pending -= 1
                    self._drained.notify_all()

    def _send(self, event: Any) -> None:
        topic = self.topic(type(event))

        def send() -> None:
            pub.sendMessage(topic, event=event)

        if self.dispatch is not None:
            self.dispatch(send)
        else:
            send()
        logger.debug(f"Published {type(event).__name__} to {topic}")
