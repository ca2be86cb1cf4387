"""FitVoice: live microphone transcription with a streaming speech-to-text backend."""

__version__ = "0.1.0"
