"""Console presentation for FitVoice sessions."""

from .console_observer import ConsoleSessionObserver

__all__ = ["ConsoleSessionObserver"]
