"""Process-wide claim on the audio input device."""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class SharedAudioDevice:
    """Exclusive, process-wide audio session.

    Only one capture may hold the device at a time. ``activate`` never blocks:
    it reports whether the claim succeeded so callers can surface "device in
    use" as a normal error.
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._lock = threading.Lock()
        self._owner: Optional[str] = None

    def activate(self, owner: str) -> bool:
        """Claim the device for ``owner``. Returns False if it is already held."""
        with self._lock:
            if self._owner is not None:
                logger.warning(f"Audio device '{self.name}' already in use by {self._owner}; "
                               f"refusing claim from {owner}")
                return False
            self._owner = owner
        logger.debug(f"Audio device '{self.name}' activated by {owner}")
        return True

    def deactivate(self, owner: str) -> None:
        """Release the claim. Releasing a claim not held by ``owner`` is a no-op."""
        with self._lock:
            if self._owner != owner:
                return
            self._owner = None
        logger.debug(f"Audio device '{self.name}' deactivated by {owner}")

    @property
    def owner(self) -> Optional[str]:
        with self._lock:
            return self._owner


SHARED_AUDIO_DEVICE = SharedAudioDevice()
