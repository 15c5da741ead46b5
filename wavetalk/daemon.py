"""
Core daemon process for WaveTalk.

Wires the pieces together:
hotkey edge → pipeline → audio capture → transcription → text delivery
"""

import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from wavetalk.audio import AudioCapture
from wavetalk.config import Config
from wavetalk.hotkey import EvdevHotkeyListener, HotkeyListener, ManualHotkeySource, ObservationUnavailable
from wavetalk.injector import TextInjector
from wavetalk.log import get_logger
from wavetalk.meter import LevelMeter
from wavetalk.pipeline import PipelineState, TranscriptionPipeline, TranscriptResult
from wavetalk.service import TranscriptionService, create_service


logger = get_logger(__name__)


@dataclass
class DaemonProcess:
    """
    Main daemon process for WaveTalk voice dictation.

    Usage:
        daemon = DaemonProcess()
        daemon.run()  # Blocks until stopped
    """

    config: Config = field(default_factory=Config.load)
    manual: bool = False  # Use the terminal (Enter) instead of a global hotkey
    on_state_change: Optional[Callable[[PipelineState], None]] = None
    on_transcription: Optional[Callable[[str], None]] = None

    # Internal state
    _running: bool = field(default=False, init=False)
    _pipeline: Optional[TranscriptionPipeline] = field(default=None, init=False)
    _service: Optional[TranscriptionService] = field(default=None, init=False)
    _listener: Optional[HotkeyListener] = field(default=None, init=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False)

    def _handle_result(self, result: TranscriptResult) -> None:
        if result.ok and self.on_transcription:
            self.on_transcription(result.text)

    def build_pipeline(self) -> TranscriptionPipeline:
        """Create the pipeline and its collaborators from config."""
        self._service = create_service(self.config)
        return TranscriptionPipeline(
            capture=AudioCapture(
                sample_rate=self.config.audio.sample_rate,
                channels=self.config.audio.channels,
                device=self.config.audio.device,
            ),
            service=self._service,
            sink=TextInjector(
                method=self.config.delivery.method,
                delay_ms=self.config.delivery.delay_ms,
            ),
            capture_path=self.config.audio.capture_path,
            meter=LevelMeter(
                offset=self.config.meter.offset,
                range=self.config.meter.range,
                smoothing=self.config.meter.smoothing,
            ),
            level_interval=self.config.meter.interval,
            timeout=self.config.pipeline.timeout,
            on_state_change=self.on_state_change,
            on_result=self._handle_result,
        )

    def _start_listener(self) -> HotkeyListener:
        """Install the global hotkey, or fall back to the terminal trigger."""
        if not self.manual:
            listener = EvdevHotkeyListener(
                trigger=self.config.hotkey.trigger,
                grab=self.config.hotkey.grab,
            )
            listener.on_edge(self._pipeline.handle_edge)
            try:
                listener.start()
                return listener
            except ObservationUnavailable as e:
                if not sys.stdin.isatty():
                    raise
                logger.warning("Global hotkey unavailable: %s", e)
                logger.warning("Falling back to manual trigger")

        listener = ManualHotkeySource()
        listener.on_edge(self._pipeline.handle_edge)
        listener.start()
        threading.Thread(
            target=self._read_terminal, args=(listener,), name="wavetalk-manual", daemon=True
        ).start()
        return listener

    def _read_terminal(self, source: ManualHotkeySource) -> None:
        """Each Enter toggles recording on and off."""
        print("Press Enter to start recording, Enter again to stop.")
        for _ in sys.stdin:
            if self._stop_event.is_set():
                break
            source.toggle()
            print("Recording... (Enter to stop)" if source.is_pressed else "Stopped.")
        self.stop()

    def _setup_signal_handlers(self) -> None:
        """Set up graceful shutdown on SIGINT/SIGTERM."""
        def handle_signal(signum, frame):
            logger.info("Shutting down...")
            self.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def run(self) -> None:
        """
        Run the daemon. Blocks until stop() is called.

        Raises:
            ConfigurationError: If configuration is invalid
            ObservationUnavailable: If no hotkey source can be installed
        """
        self.config.ensure_valid()

        self._pipeline = self.build_pipeline()
        self._pipeline.start()

        try:
            self._listener = self._start_listener()
        except ObservationUnavailable:
            self._cleanup()
            raise

        self._setup_signal_handlers()
        self._running = True

        if isinstance(self._listener, EvdevHotkeyListener):
            logger.info("Ready! Hold %s to dictate.", self.config.hotkey.trigger.upper())

        try:
            while self._running and not self._stop_event.is_set():
                self._stop_event.wait(timeout=0.5)
        finally:
            self._cleanup()

    def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._running = False
        self._stop_event.set()

    def _cleanup(self) -> None:
        """Clean up resources."""
        if self._listener:
            self._listener.stop()
            self._listener = None

        if self._pipeline:
            self._pipeline.stop()

        if self._service:
            self._service.shutdown()

        logger.info("Stopped.")

    @property
    def pipeline(self) -> Optional[TranscriptionPipeline]:
        return self._pipeline

    @property
    def state(self) -> PipelineState:
        """Get current pipeline state."""
        return self._pipeline.state if self._pipeline else PipelineState.IDLE

    @property
    def is_running(self) -> bool:
        """Check if daemon is running."""
        return self._running
