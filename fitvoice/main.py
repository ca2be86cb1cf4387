"""Main application entry point for FitVoice."""

import sys
import time
import argparse
import logging
from pathlib import Path

from fitvoice import __version__
from fitvoice.audio.capture import AudioCapture
from fitvoice.exceptions import FitVoiceError, SessionError
from fitvoice.models.session import SessionState
from fitvoice.services.event_publisher import SessionEventPublisher
from fitvoice.services.session_controller import SessionController
from fitvoice.services.submission import TranscriptSubmitter
from fitvoice.transcription.google_backend import GoogleStreamingTranscriber
from fitvoice.ui.console_observer import ConsoleSessionObserver

from .config import FitVoiceConfig

logger = logging.getLogger(__name__)


class Server:

    def __init__(self, config_path: str, log_level: str = None):
        # Load configuration
        self.config = FitVoiceConfig(config_path)
        # Command line overrides config if specified
        if log_level:
            self.config.set('logging.level', log_level)
        setup_logging(self.config, self.config.get('logging.level', 'INFO'))
        self.controller = None
        self.observer = None

    def init(self):
        # Initialize services
        logger.info("Initializing services...")

        # Get audio settings from config
        sample_rate = self.config.get('audio.sample_rate', 16000)
        chunk_size = self.config.get('audio.chunk_size', 1024)
        channels = self.config.get('audio.channels', 1)
        logger.info(f"Audio settings: {sample_rate}Hz, {chunk_size} samples/chunk, {channels} channels")

        audio_capture = AudioCapture(
            sample_rate=sample_rate,
            chunk_size=chunk_size,
            channels=channels,
            device_index=self.config.get('audio.device_index'),
        )

        transcriber = GoogleStreamingTranscriber(
            credentials_path=self.config.get_google_credentials_path(),
            sample_rate=sample_rate,
            language=self.config.get('google_cloud.language', 'en-US'),
            model=self.config.get('google_cloud.model', 'latest_long'),
            use_enhanced=self.config.get('google_cloud.use_enhanced_model', True),
            enable_automatic_punctuation=self.config.get('google_cloud.enable_automatic_punctuation', True),
            interim_results=self.config.get('google_cloud.interim_results', True),
        )
        transcriber.initialize()

        publisher = SessionEventPublisher(self.config.get('session.topic_root', 'session'))
        self.controller = SessionController(
            audio_capture=audio_capture,
            transcriber=transcriber,
            publisher=publisher,
            stop_grace_seconds=self.config.get('session.stop_grace_seconds', 3.0),
        )

        submitter = TranscriptSubmitter() if self.config.get('submission.enabled', False) else None
        self.observer = ConsoleSessionObserver(publisher, submitter=submitter)
        logger.info("Services ready")

    def run_auto(self, duration: int) -> None:
        """Record for ``duration`` seconds (or until the utterance ends), then stop."""
        self.controller.start()
        deadline = time.time() + duration
        while time.time() < deadline and self.controller.state is not SessionState.IDLE:
            time.sleep(0.1)

        self.controller.stop()
        grace = self.config.get('session.stop_grace_seconds', 3.0)
        self.controller.wait_until_idle(timeout=grace + 5.0)
        print(f"\nFinal transcript: {self.controller.last_final_text or ''}")

    def run_interactive(self) -> None:
        """Enter toggles recording, like the record button; q quits."""
        print("Press Enter to start/stop recording, 'q' then Enter to quit.")
        while True:
            try:
                line = input()
            except EOFError:
                logger.info("Input closed; leaving interactive mode")
                break
            if line.strip().lower() == 'q':
                break
            if self.controller.state is SessionState.IDLE:
                try:
                    self.controller.start()
                except SessionError as e:
                    logger.warning(f"Start rejected: {e}")
            else:
                self.controller.stop()

    def cleanup(self):
        if self.controller:
            self.controller.shutdown()
        if self.observer:
            self.observer.close()


def setup_logging(config, level: str = "INFO") -> None:

    """Set up logging configuration from YAML config."""
    # Get log file path from config
    log_file_path = config.get('logging.file_path', 'data/logs/fitvoice.log')
    console_output = config.get('logging.console_output', True)

    # Create logs directory if it doesn't exist
    log_dir = Path(log_file_path).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    # Set up handlers
    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Console handler - only if enabled in config
    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.WARNING)  # Only show warnings and above on console
        console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    # Log startup
    logger = logging.getLogger(__name__)
    logger.info("="*50)
    logger.info("FitVoice application starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("="*50)


def main() -> None:
    """Main entry point for FitVoice application."""
    parser = argparse.ArgumentParser(
        description="FitVoice - Live microphone transcription",
        epilog="Interactive mode: Enter=Start/Stop recording, q=Quit"
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: built-in settings)"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: from config, INFO)"
    )

    parser.add_argument(
        "--auto",
        action="store_true",
        help="Run in automatic mode: start recording, record for specified duration, then stop and exit"
    )

    parser.add_argument(
        "--duration",
        type=int,
        default=10,
        help="Duration in seconds for auto mode recording (default: 10)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"FitVoice v{__version__}"
    )

    args = parser.parse_args()

    server = None
    try:
        server = Server(args.config, args.log_level)
        server.init()
        if args.auto:
            server.run_auto(args.duration)
        else:
            server.run_interactive()
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
    except (FitVoiceError, FileNotFoundError) as e:
        print(f"❌ Error: {e}")
        logging.error(f"Application error: {e}")
        sys.exit(1)
    finally:
        if server is not None:
            server.cleanup()


if __name__ == "__main__":
    main()
