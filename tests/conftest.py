"""
Shared pytest fixtures for WaveTalk tests.
"""

from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import Mock

import numpy as np
import pytest

from wavetalk.audio import AlreadyActive, CaptureHandle, NotActive
from wavetalk.meter import LevelSample, floor_sample, normalize
from wavetalk.pipeline import TranscriptionPipeline


class ImmediateExecutor(Executor):
    """Runs submitted work inline so tests stay single-threaded."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeCapture:
    """In-memory stand-in for AudioCapture."""

    def __init__(self):
        self.start_calls = []
        self.stop_calls = []
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.power = -20.0
        self._handle: Optional[CaptureHandle] = None
        self._next_id = 1

    def start(self, target_path):
        self.start_calls.append(Path(target_path))
        if self._handle is not None:
            raise AlreadyActive("Capture already active")
        if self.start_error is not None:
            raise self.start_error
        self._handle = CaptureHandle(handle_id=self._next_id, path=Path(target_path), started_at=0.0)
        self._next_id += 1
        return self._handle

    def stop(self, handle=None):
        self.stop_calls.append(handle)
        if self._handle is None:
            raise NotActive("No active capture")
        handle, self._handle = self._handle, None
        if self.stop_error is not None:
            raise self.stop_error
        return handle.path

    def sample_level(self, handle=None) -> LevelSample:
        if self._handle is None:
            return floor_sample()
        return LevelSample(power=self.power, level=normalize(self.power), timestamp=0.0)

    @property
    def is_active(self) -> bool:
        return self._handle is not None


class FakeService:
    """
    Transcription service whose futures are resolved by the test.

    With auto_text / auto_error set, futures come back already resolved.
    """

    def __init__(self, auto_text: Optional[str] = None, auto_error: Optional[Exception] = None):
        self.auto_text = auto_text
        self.auto_error = auto_error
        self.submitted = []
        self.futures = []

    def submit(self, path) -> Future:
        self.submitted.append(Path(path))
        future = Future()
        if self.auto_error is not None:
            future.set_exception(self.auto_error)
        elif self.auto_text is not None:
            future.set_result(self.auto_text)
        self.futures.append(future)
        return future

    def shutdown(self) -> None:
        pass


class RecordingSink:
    """DeliverySink that remembers what it was given."""

    def __init__(self, error: Optional[Exception] = None):
        self.delivered = []
        self.error = error

    def deliver(self, text: str) -> None:
        self.delivered.append(text)
        if self.error is not None:
            raise self.error


@pytest.fixture
def fake_capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_pipeline(fake_capture, fake_service, sink, tmp_path) -> Callable[..., TranscriptionPipeline]:
    """Build a pipeline with fakes; keyword arguments override any field."""
    created = []

    def _make(**kwargs: Any) -> TranscriptionPipeline:
        errors = []
        results = []
        states = []
        options = {
            "capture": fake_capture,
            "service": fake_service,
            "sink": sink,
            "capture_path": tmp_path / "wavetalk_input.wav",
            "timeout": 0,
            "delivery_executor": ImmediateExecutor(),
            "on_error": errors.append,
            "on_result": results.append,
            "on_state_change": states.append,
        }
        options.update(kwargs)
        pipeline = TranscriptionPipeline(**options)
        pipeline.errors = errors
        pipeline.results = results
        pipeline.states = states
        created.append(pipeline)
        return pipeline

    yield _make

    for pipeline in created:
        pipeline.stop()


@pytest.fixture
def sample_audio() -> np.ndarray:
    """1 second of 440Hz sine wave at 16kHz, as a (frames, 1) block."""
    sample_rate = 16000
    t = np.linspace(0, 1, sample_rate, dtype=np.float32)
    return (0.5 * np.sin(2 * np.pi * 440 * t)).reshape(-1, 1)


@pytest.fixture
def mock_stream_factory() -> Callable[..., Mock]:
    """Factory for mock audio streams; kwargs of every call are kept on .calls."""
    calls = []

    def _factory(**kwargs: Any) -> Mock:
        calls.append(kwargs)
        stream = Mock()
        stream.start = Mock()
        stream.stop = Mock()
        stream.close = Mock()
        return stream

    _factory.calls = calls
    return _factory
