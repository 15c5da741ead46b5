"""
Transcription pipeline for WaveTalk.

The state machine behind push-to-talk:

    IDLE --start--> RECORDING --stop--> PROCESSING --text--> DELIVERING --done--> IDLE
                                            |
                                            +--error/timeout--> IDLE

Every transition happens on one coordinator context. Hotkey threads,
the transcription future, the delivery worker and the timeout timer only
post events to a queue, so a slow network call never blocks the hotkey.
"""

import queue
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Union

from wavetalk.audio import AudioCapture, CaptureError, CaptureHandle, DeviceUnavailable
from wavetalk.config import ConfigurationError
from wavetalk.hotkey import Edge, HotkeyEvent
from wavetalk.injector import DeliveryError, DeliverySink
from wavetalk.log import get_logger
from wavetalk.meter import LevelMeter
from wavetalk.observable import Observable
from wavetalk.service import TranscriptionService
from wavetalk.timer import PeriodicTask
from wavetalk.transcriber import ServiceError, ServiceTimeout


logger = get_logger(__name__)


class PipelineState(Enum):
    """State of the pipeline."""
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    DELIVERING = "delivering"


class SessionStatus(Enum):
    """Status of a recording session."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class RecordingSession:
    """One capture attempt, owned by the pipeline."""
    session_id: int
    path: Path
    started_at: float
    ended_at: Optional[float] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def duration(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class TranscriptResult:
    """
    Outcome of the encode+transcribe step for one session.

    Exactly one of text and error is set; text may be an empty string.
    """
    session_id: int
    text: Optional[str] = None
    error: Optional[Exception] = None

    def __post_init__(self):
        if (self.text is None) == (self.error is None):
            raise ValueError("TranscriptResult needs exactly one of text or error")

    @property
    def ok(self) -> bool:
        return self.error is None


# Events posted to the coordinator

@dataclass(frozen=True)
class StartRequested:
    timestamp: float


@dataclass(frozen=True)
class StopRequested:
    timestamp: float


@dataclass(frozen=True)
class ServiceResult:
    result: TranscriptResult


@dataclass(frozen=True)
class ServiceTimedOut:
    session_id: int


@dataclass(frozen=True)
class DeliveryComplete:
    session_id: int
    error: Optional[Exception] = None


_SHUTDOWN = object()


@dataclass
class TranscriptionPipeline:
    """
    Orchestrates capture, transcription and delivery.

    A Start while anything is in flight is dropped; sessions are
    serialized, never queued.

    Usage:
        pipeline = TranscriptionPipeline(capture, service, sink)
        pipeline.start()        # Coordinator thread
        pipeline.on_start()     # Hotkey down
        pipeline.on_stop()      # Hotkey up
        ...
        pipeline.stop()

    Tests can skip start() and drive the queue with run_pending() or
    process_next() on their own thread.
    """

    capture: AudioCapture
    service: TranscriptionService
    sink: DeliverySink
    capture_path: Union[str, Path] = "/tmp/wavetalk_input.wav"
    meter: LevelMeter = field(default_factory=LevelMeter)
    level_interval: float = 0.04
    timeout: float = 60.0  # 0 disables
    delivery_executor: Optional[Executor] = None
    clock: Callable[[], float] = time.monotonic

    on_state_change: Optional[Callable[[PipelineState], None]] = None
    on_result: Optional[Callable[[TranscriptResult], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None

    # Presentation signals: written here, only read by views
    is_recording: Observable = field(default_factory=lambda: Observable(False), init=False)
    audio_level: Observable = field(default_factory=lambda: Observable(0.0), init=False)

    # Internal state
    _state: PipelineState = field(default=PipelineState.IDLE, init=False)
    _session: Optional[RecordingSession] = field(default=None, init=False)
    _handle: Optional[CaptureHandle] = field(default=None, init=False)
    _session_counter: int = field(default=0, init=False)
    _events: queue.Queue = field(default_factory=queue.Queue, init=False)
    _level_task: Optional[PeriodicTask] = field(default=None, init=False)
    _timeout_timer: Optional[threading.Timer] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)
    _owns_executor: bool = field(default=False, init=False)

    def __post_init__(self):
        if self.delivery_executor is None:
            self.delivery_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="wavetalk-deliver"
            )
            self._owns_executor = True

    # ------------------------------------------------------------------
    # Inputs (any thread)
    # ------------------------------------------------------------------

    def _post(self, event) -> None:
        self._events.put(event)

    def on_start(self) -> None:
        """Request a new session (hotkey down)."""
        self._post(StartRequested(self.clock()))

    def on_stop(self) -> None:
        """Request the end of the recording (hotkey up)."""
        self._post(StopRequested(self.clock()))

    def handle_edge(self, event: HotkeyEvent) -> None:
        """Hotkey listener callback: down starts, up stops."""
        if event.edge is Edge.DOWN:
            self._post(StartRequested(event.timestamp))
        else:
            self._post(StopRequested(event.timestamp))

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the coordinator thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run_loop, name="wavetalk-pipeline", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the coordinator and abort any recording in progress."""
        if self._thread is not None:
            self._post(_SHUTDOWN)
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                # Coordinator still owns the state; leave it alone
                logger.warning("Pipeline coordinator did not exit within %ss", timeout)
                return
            self._thread = None

        self._cancel_timeout()
        if self._state is PipelineState.RECORDING:
            self._stop_level_task()
            self.is_recording.set(False)
            try:
                self.capture.stop(self._handle)
            except Exception as e:
                logger.warning("Could not stop capture on shutdown: %s", e)
            if self._session is not None:
                self._session.status = SessionStatus.ABORTED
                self._session.ended_at = self.clock()
            self._discard_session()
            self._set_state(PipelineState.IDLE)

        if self._owns_executor:
            self.delivery_executor.shutdown(wait=False)

    def _run_loop(self) -> None:
        while True:
            event = self._events.get()
            if event is _SHUTDOWN:
                break
            self._dispatch(event)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Handle one queued event on the calling thread. False if none arrived."""
        try:
            event = self._events.get(timeout=timeout) if timeout else self._events.get_nowait()
        except queue.Empty:
            return False
        if event is not _SHUTDOWN:
            self._dispatch(event)
        return True

    def run_pending(self) -> int:
        """Handle every queued event on the calling thread. Returns how many."""
        handled = 0
        while self.process_next():
            handled += 1
        return handled

    def _dispatch(self, event) -> None:
        try:
            if isinstance(event, StartRequested):
                self._handle_start(event)
            elif isinstance(event, StopRequested):
                self._handle_stop(event)
            elif isinstance(event, ServiceResult):
                self._handle_service_result(event.result)
            elif isinstance(event, ServiceTimedOut):
                self._handle_timeout(event.session_id)
            elif isinstance(event, DeliveryComplete):
                self._handle_delivery_complete(event)
            else:
                logger.warning("Unknown pipeline event: %r", event)
        except Exception:
            # Keep the coordinator alive; the next hotkey press starts fresh
            logger.exception("Pipeline failed handling %r", event)

    # ------------------------------------------------------------------
    # Transitions (coordinator only)
    # ------------------------------------------------------------------

    def _set_state(self, state: PipelineState) -> None:
        """Update state and notify listeners."""
        if state is self._state:
            return
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception:
                logger.exception("State change callback failed")

    def _report(self, error: Exception) -> None:
        logger.error("%s: %s", type(error).__name__, error)
        if self.on_error:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("Error callback failed")

    def _discard_session(self) -> None:
        self._session = None
        self._handle = None

    def _finish(self, error: Optional[Exception] = None) -> None:
        """End the current cycle and return to IDLE."""
        self._cancel_timeout()
        if error is not None:
            self._report(error)
        self._discard_session()
        self._set_state(PipelineState.IDLE)

    def _handle_start(self, event: StartRequested) -> None:
        if self._state is not PipelineState.IDLE:
            logger.debug("Start ignored while %s", self._state.value)
            return

        self._session_counter += 1
        session = RecordingSession(
            session_id=self._session_counter,
            path=Path(self.capture_path),
            started_at=event.timestamp,
        )

        try:
            handle = self.capture.start(session.path)
        except CaptureError as e:
            session.status = SessionStatus.FAILED
            session.ended_at = self.clock()
            self._report(e)
            return

        self._session = session
        self._handle = handle
        self._set_state(PipelineState.RECORDING)
        self.is_recording.set(True)
        self._start_level_task()
        logger.info("Recording (session %d)", session.session_id)

    def _handle_stop(self, event: StopRequested) -> None:
        if self._state is not PipelineState.RECORDING:
            logger.debug("Stop ignored while %s", self._state.value)
            return

        session = self._session
        self._stop_level_task()
        self.is_recording.set(False)

        try:
            path = self.capture.stop(self._handle)
        except Exception as e:
            error = e
            if not isinstance(e, CaptureError):
                error = DeviceUnavailable(f"Capture failed to stop: {e}")
                error.__cause__ = e
            session.status = SessionStatus.FAILED
            session.ended_at = self.clock()
            self._finish(error)
            return

        self._handle = None
        session.ended_at = event.timestamp
        session.status = SessionStatus.COMPLETED
        self._set_state(PipelineState.PROCESSING)
        logger.info("Processing session %d (%.2fs of audio)",
                    session.session_id, max(0.0, session.duration or 0.0))

        try:
            future = self.service.submit(path)
        except (ServiceError, RuntimeError) as e:
            self._finish(e if isinstance(e, ServiceError) else ServiceError(f"Cannot submit job: {e}"))
            return

        self._arm_timeout(session.session_id)
        # May run right here if the future is already done; it only posts
        future.add_done_callback(partial(self._on_service_done, session.session_id))

    def _handle_service_result(self, result: TranscriptResult) -> None:
        session = self._session
        if (self._state is not PipelineState.PROCESSING
                or session is None or result.session_id != session.session_id):
            logger.debug("Dropping stale result for session %d", result.session_id)
            return

        self._cancel_timeout()
        if self.on_result:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("Result callback failed")

        if result.error is not None:
            self._finish(result.error)
            return

        self._set_state(PipelineState.DELIVERING)
        self.delivery_executor.submit(self._deliver, session.session_id, result.text)

    def _handle_timeout(self, session_id: int) -> None:
        session = self._session
        if (self._state is not PipelineState.PROCESSING
                or session is None or session.session_id != session_id):
            return
        self._finish(ServiceTimeout(f"No transcript after {self.timeout:g}s"))

    def _handle_delivery_complete(self, event: DeliveryComplete) -> None:
        session = self._session
        if (self._state is not PipelineState.DELIVERING
                or session is None or session.session_id != event.session_id):
            logger.debug("Dropping stale delivery for session %d", event.session_id)
            return
        # A failed insertion is reported but the session still completed
        self._finish(event.error)
        logger.info("Session %d done", event.session_id)

    # ------------------------------------------------------------------
    # Workers (post results back to the coordinator)
    # ------------------------------------------------------------------

    def _on_service_done(self, session_id: int, future: "Future[str]") -> None:
        try:
            text = future.result()
        except (ServiceError, ConfigurationError) as e:
            result = TranscriptResult(session_id, error=e)
        except Exception as e:
            error = ServiceError(f"Unexpected transcription error: {e}")
            error.__cause__ = e
            result = TranscriptResult(session_id, error=error)
        else:
            result = TranscriptResult(session_id, text=text or "")
        self._post(ServiceResult(result))

    def _deliver(self, session_id: int, text: str) -> None:
        try:
            self.sink.deliver(text)
        except DeliveryError as e:
            self._post(DeliveryComplete(session_id, e))
        except Exception as e:
            error = DeliveryError(f"Unexpected delivery error: {e}")
            error.__cause__ = e
            self._post(DeliveryComplete(session_id, error))
        else:
            self._post(DeliveryComplete(session_id))

    def _arm_timeout(self, session_id: int) -> None:
        if not self.timeout or self.timeout <= 0:
            return
        self._timeout_timer = threading.Timer(
            self.timeout, self._post, args=(ServiceTimedOut(session_id),)
        )
        self._timeout_timer.daemon = True
        self._timeout_timer.start()

    def _cancel_timeout(self) -> None:
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None

    def _poll_level(self) -> None:
        sample = self.capture.sample_level(self._handle)
        self.audio_level.set(self.meter.sample(sample.power, sample.timestamp).level)

    def _start_level_task(self) -> None:
        self.meter.reset()
        self._level_task = PeriodicTask(self.level_interval, self._poll_level, name="wavetalk-level")
        self._level_task.start()

    def _stop_level_task(self) -> None:
        if self._level_task is not None:
            self._level_task.cancel(wait=True)
            self._level_task = None
        self.audio_level.set(0.0)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        """Get current pipeline state."""
        return self._state

    @property
    def session(self) -> Optional[RecordingSession]:
        """The session in flight, if any."""
        return self._session

    @property
    def sessions_started(self) -> int:
        """How many sessions have been created so far."""
        return self._session_counter

    @property
    def is_running(self) -> bool:
        """Check if the coordinator thread is running."""
        return self._thread is not None and self._thread.is_alive()
