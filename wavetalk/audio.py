"""
Audio capture module for WaveTalk.

Records the microphone into a single-slot WAV file using sounddevice,
and keeps a running power reading for the level meter.
"""

import itertools
import threading
import time
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

import numpy as np
import sounddevice as sd

from wavetalk.log import get_logger
from wavetalk.meter import FLOOR_DBFS, LevelSample, floor_sample, normalize, power_dbfs


logger = get_logger(__name__)


class CaptureError(Exception):
    """Base exception for audio capture errors."""
    pass


class DeviceError(CaptureError):
    """The capture device could not be used."""
    pass


class DeviceUnavailable(DeviceError):
    """No input device is accessible."""
    pass


class PermissionDenied(DeviceError):
    """The OS denied microphone access."""
    pass


class AlreadyActive(CaptureError):
    """A capture is already in progress."""
    pass


class NotActive(CaptureError):
    """There is no capture to stop."""
    pass


_PERMISSION_HINTS = ("permission", "access denied", "not permitted", "eacces")

_handle_ids = itertools.count(1)


@dataclass(frozen=True)
class CaptureHandle:
    """Opaque handle for one active capture."""
    handle_id: int
    path: Path
    started_at: float


def _classify_device_error(exc: Exception) -> DeviceError:
    message = str(exc)
    if any(hint in message.lower() for hint in _PERMISSION_HINTS):
        return PermissionDenied(f"Microphone access denied: {message}")
    return DeviceUnavailable(f"No usable input device: {message}")


@dataclass
class AudioCapture:
    """
    Records audio from the microphone straight into a WAV file.

    Usage:
        capture = AudioCapture()
        handle = capture.start("/tmp/wavetalk_input.wav")
        # ... user speaks, capture.sample_level() feeds the meter ...
        path = capture.stop(handle)
    """
    sample_rate: int = 16000
    channels: int = 1
    device: Optional[str] = None
    stream_factory: Optional[Callable[..., Any]] = None

    # Internal state
    _handle: Optional[CaptureHandle] = field(default=None, init=False)
    _stream: Any = field(default=None, init=False)
    _wav: Optional[wave.Wave_write] = field(default=None, init=False)
    _last_power: float = field(default=FLOOR_DBFS, init=False)
    _last_sample_at: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def _audio_callback(self, indata: np.ndarray, frames: int,
                        time_info: Any, status: sd.CallbackFlags) -> None:
        """Callback function called for each audio block."""
        if status:
            logger.debug("Audio status: %s", status)

        power = power_dbfs(indata)
        # float32 (-1.0 to 1.0) to int16 PCM
        pcm = (np.clip(indata, -1.0, 1.0) * 32767).astype(np.int16)

        with self._lock:
            if self._wav is None:
                return
            self._wav.writeframes(pcm.tobytes())
            self._last_power = power
            self._last_sample_at = time.monotonic()

    def _open_wav(self, path: Path) -> wave.Wave_write:
        path.parent.mkdir(parents=True, exist_ok=True)
        # "wb" truncates; a new session always replaces the previous recording
        wav_file = wave.open(str(path), "wb")
        wav_file.setnchannels(self.channels)
        wav_file.setsampwidth(2)  # 16-bit
        wav_file.setframerate(self.sample_rate)
        return wav_file

    def start(self, target_path: Union[str, Path]) -> CaptureHandle:
        """
        Start recording into target_path, overwriting any existing file.

        Raises:
            AlreadyActive: If a capture is already open.
            DeviceUnavailable: If no input device can be opened.
            PermissionDenied: If the OS refuses microphone access.
        """
        with self._lock:
            if self._handle is not None:
                raise AlreadyActive(f"Capture already active: {self._handle.path}")

        path = Path(target_path)
        factory = self.stream_factory or sd.InputStream

        try:
            wav_file = self._open_wav(path)
        except OSError as e:
            raise DeviceUnavailable(f"Cannot write capture file {path}: {e}") from e

        with self._lock:
            self._wav = wav_file
            self._last_power = FLOOR_DBFS

        try:
            stream = factory(
                samplerate=self.sample_rate,
                channels=self.channels,
                device=self.device,
                dtype=np.float32,
                callback=self._audio_callback,
            )
            stream.start()
        except Exception as e:
            with self._lock:
                self._wav = None
            wav_file.close()
            raise _classify_device_error(e) from e

        handle = CaptureHandle(handle_id=next(_handle_ids), path=path, started_at=time.monotonic())
        with self._lock:
            self._stream = stream
            self._handle = handle

        logger.debug("Capture %d started: %s", handle.handle_id, path)
        return handle

    def stop(self, handle: Optional[CaptureHandle] = None) -> Path:
        """
        Stop recording, flush the file and return its path.

        Raises:
            NotActive: If nothing is being captured, or handle is stale.
            DeviceUnavailable: If the stream or the file fails to close. The
                capture is released either way.
        """
        with self._lock:
            active = self._handle
            if active is None:
                raise NotActive("No active capture")
            if handle is not None and handle.handle_id != active.handle_id:
                raise NotActive(f"Stale capture handle {handle.handle_id}")
            stream = self._stream
            self._stream = None
            self._handle = None

        error: Optional[Exception] = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                error = e

        with self._lock:
            wav_file = self._wav
            self._wav = None
            self._last_power = FLOOR_DBFS
        if wav_file is not None:
            try:
                wav_file.close()
            except Exception as e:
                error = error or e

        if error is not None:
            raise DeviceUnavailable(f"Capture {active.handle_id} failed to stop: {error}") from error

        logger.debug("Capture %d stopped: %s", active.handle_id, active.path)
        return active.path

    def sample_level(self, handle: Optional[CaptureHandle] = None) -> LevelSample:
        """
        Non-blocking read of the current loudness.

        Returns a floor sample when nothing is being captured. Never raises.
        """
        with self._lock:
            if self._handle is None or (handle is not None and handle.handle_id != self._handle.handle_id):
                return floor_sample()
            power = self._last_power
            timestamp = self._last_sample_at or time.monotonic()
        return LevelSample(power=power, level=normalize(power), timestamp=timestamp)

    @property
    def is_active(self) -> bool:
        """Check if currently capturing."""
        return self._handle is not None

    @property
    def handle(self) -> Optional[CaptureHandle]:
        return self._handle

    @staticmethod
    def list_devices() -> list[dict]:
        """List available audio input devices."""
        devices = []
        for i, dev in enumerate(sd.query_devices()):
            if dev['max_input_channels'] > 0:
                devices.append({
                    'index': i,
                    'name': dev['name'],
                    'channels': dev['max_input_channels'],
                    'sample_rate': dev['default_samplerate'],
                })
        return devices

    @staticmethod
    def get_default_device() -> Optional[dict]:
        """Get the default input device info, or None if there is none."""
        try:
            device_id = sd.default.device[0]  # Input device
            if device_id is None or device_id < 0:
                return None
            dev = sd.query_devices(device_id)
        except sd.PortAudioError:
            return None
        return {
            'index': device_id,
            'name': dev['name'],
            'channels': dev['max_input_channels'],
            'sample_rate': dev['default_samplerate'],
        }
