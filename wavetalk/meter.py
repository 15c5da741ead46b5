"""
Level metering for WaveTalk.

Turns raw microphone power into a normalized [0, 1] loudness value
for presentation consumers (e.g. a waveform indicator).
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np


# Anything quieter than this is reported as silence
FLOOR_DBFS = -60.0

DEFAULT_OFFSET = 45.0
DEFAULT_RANGE = 35.0


@dataclass(frozen=True)
class LevelSample:
    """An instantaneous loudness reading."""
    power: float  # dBFS, FLOOR_DBFS..0
    level: float  # normalized, 0..1
    timestamp: float  # time.monotonic()


def normalize(
    raw_power: float,
    offset: float = DEFAULT_OFFSET,
    range_: float = DEFAULT_RANGE,
) -> float:
    """
    Map a power reading to [0, 1] with a clamped linear rescale.

    Args:
        raw_power: Power in dBFS (roughly -60..0)
        offset: Added to the power before scaling
        range_: Span of dB that maps onto 0..1

    Returns:
        clamp((raw_power + offset) / range_, 0, 1)
    """
    return float(max(0.0, min(1.0, (raw_power + offset) / range_)))


def power_dbfs(block: np.ndarray) -> float:
    """RMS power of a float32 audio block in dBFS, floored at FLOOR_DBFS."""
    if block.size == 0:
        return FLOOR_DBFS
    rms = float(np.sqrt(np.mean(np.square(block, dtype=np.float64))))
    if rms <= 0.0:
        return FLOOR_DBFS
    return max(FLOOR_DBFS, 20.0 * float(np.log10(rms)))


def floor_sample() -> LevelSample:
    """Sample reported when nothing is being captured."""
    return LevelSample(power=FLOOR_DBFS, level=0.0, timestamp=time.monotonic())


@dataclass
class LevelMeter:
    """
    Normalizes power readings and optionally smooths them.

    smoothing is the weight of the previous value (0 = no smoothing).
    """
    offset: float = DEFAULT_OFFSET
    range: float = DEFAULT_RANGE
    smoothing: float = 0.0

    _level: Optional[float] = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def sample(self, raw_power: float, timestamp: Optional[float] = None) -> LevelSample:
        """Build a LevelSample from a raw power reading."""
        target = normalize(raw_power, self.offset, self.range)
        with self._lock:
            if self._level is None or self.smoothing <= 0:
                self._level = target
            else:
                self._level = self.smoothing * self._level + (1.0 - self.smoothing) * target
            level = self._level
        return LevelSample(
            power=raw_power,
            level=level,
            timestamp=time.monotonic() if timestamp is None else timestamp,
        )

    def reset(self) -> None:
        with self._lock:
            self._level = None
