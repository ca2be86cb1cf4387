"""Downstream hand-off of finalized transcripts.

The session core never calls this; observers do, once a session has ended.
Transport to a remote API is out of scope, so the default submitter only
records and logs what it was given.
"""

import logging
from datetime import datetime
from typing import List, Tuple

from ..exceptions import SubmitError

logger = logging.getLogger(__name__)


class TranscriptSubmitter:
    """Accepts finalized transcript text for downstream processing."""

    def __init__(self):
        self.submissions: List[Tuple[datetime, str]] = []

    def submit(self, text: str) -> None:
        """Submit finalized text.

        Raises:
            SubmitError: The text is empty
        """
        if not text or not text.strip():
            raise SubmitError("Cannot submit an empty transcript")

        self.submissions.append((datetime.now(), text))
        logger.info(f"Transcript submitted ({len(text)} chars): '{text}'")
