"""
Configuration management for WaveTalk.

Handles loading, saving, and validating configuration from ~/.config/wavetalk/config.yaml
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import yaml


# Default config directory
CONFIG_DIR = Path.home() / ".config" / "wavetalk"
CONFIG_FILE = CONFIG_DIR / "config.yaml"

# Shipped placeholder; never a usable credential
PLACEHOLDER_API_KEY = "YOUR_API_KEY_HERE"

BACKENDS = ("deepgram", "groq")

# Per-backend environment variables, checked after WAVETALK_API_KEY
BACKEND_ENV_VARS = {
    "deepgram": "DEEPGRAM_API_KEY",
    "groq": "GROQ_API_KEY",
}

DEFAULT_MODELS = {
    "deepgram": "nova-2",
    "groq": "whisper-large-v3-turbo",
}


class ConfigurationError(Exception):
    """Exception raised for missing or invalid configuration."""
    pass


def default_capture_path() -> str:
    """Single-slot capture file, rewritten by every session."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir()
    return str(Path(runtime_dir) / "wavetalk_input.wav")


def is_placeholder_key(api_key: Optional[str]) -> bool:
    """Check whether a key is empty or still the shipped placeholder."""
    if not api_key or not api_key.strip():
        return True
    return api_key.strip().upper().startswith("YOUR_")


@dataclass
class AudioConfig:
    """Audio recording settings."""
    sample_rate: int = 16000
    channels: int = 1  # Mono
    device: Optional[str] = None  # Default audio device
    capture_path: str = field(default_factory=default_capture_path)


@dataclass
class ApiConfig:
    """Speech-to-text API settings."""
    backend: str = "deepgram"
    api_key: str = ""
    model: str = DEFAULT_MODELS["deepgram"]
    language: str = "en"
    smart_format: bool = True
    timeout: float = 30.0
    max_retries: int = 1

    def resolved_api_key(self) -> str:
        """Return the API key, preferring the environment over the file."""
        for var in ("WAVETALK_API_KEY", BACKEND_ENV_VARS.get(self.backend)):
            if var and os.environ.get(var):
                return os.environ[var]
        return self.api_key


@dataclass
class HotkeyConfig:
    """Push-to-talk trigger settings."""
    trigger: str = "capslock"
    grab: bool = True  # Swallow the trigger key so it never reaches other apps


@dataclass
class MeterConfig:
    """Level meter tuning (presentation only)."""
    offset: float = 45.0
    range: float = 35.0
    smoothing: float = 0.0
    interval: float = 0.04  # Seconds between level samples


@dataclass
class DeliveryConfig:
    """How transcripts reach the focused window."""
    method: str = "type"  # "type" or "paste"
    delay_ms: int = 0


@dataclass
class PipelineConfig:
    """Transcription pipeline settings."""
    timeout: float = 60.0  # 0 disables the processing timeout
    out_of_process: bool = False  # Run transcription as a `wavetalk transcribe` subprocess


@dataclass
class Config:
    """Main configuration for WaveTalk."""
    audio: AudioConfig = field(default_factory=AudioConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    hotkey: HotkeyConfig = field(default_factory=HotkeyConfig)
    meter: MeterConfig = field(default_factory=MeterConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def get_config_path(cls) -> Path:
        """Return the path to the config file."""
        return CONFIG_FILE

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from file.
        Creates default config if file doesn't exist.
        """
        path = Path(path) if path else CONFIG_FILE
        if not path.exists():
            config = cls()
            config.save(path)
            return config

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        audio_data = data.get("audio") or {}
        api_data = data.get("api") or {}
        hotkey_data = data.get("hotkey") or {}
        meter_data = data.get("meter") or {}
        delivery_data = data.get("delivery") or {}
        pipeline_data = data.get("pipeline") or {}

        backend = api_data.get("backend", "deepgram")

        return cls(
            audio=AudioConfig(
                sample_rate=audio_data.get("sample_rate", 16000),
                channels=audio_data.get("channels", 1),
                device=audio_data.get("device"),
                capture_path=audio_data.get("capture_path") or default_capture_path(),
            ),
            api=ApiConfig(
                backend=backend,
                api_key=api_data.get("api_key", ""),
                model=api_data.get("model", DEFAULT_MODELS.get(backend, "")),
                language=api_data.get("language", "en"),
                smart_format=api_data.get("smart_format", True),
                timeout=api_data.get("timeout", 30.0),
                max_retries=api_data.get("max_retries", 1),
            ),
            hotkey=HotkeyConfig(
                trigger=hotkey_data.get("trigger", "capslock"),
                grab=hotkey_data.get("grab", True),
            ),
            meter=MeterConfig(
                offset=meter_data.get("offset", 45.0),
                range=meter_data.get("range", 35.0),
                smoothing=meter_data.get("smoothing", 0.0),
                interval=meter_data.get("interval", 0.04),
            ),
            delivery=DeliveryConfig(
                method=delivery_data.get("method", "type"),
                delay_ms=delivery_data.get("delay_ms", 0),
            ),
            pipeline=PipelineConfig(
                timeout=pipeline_data.get("timeout", 60.0),
                out_of_process=pipeline_data.get("out_of_process", False),
            ),
        )

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            "audio": {
                "sample_rate": self.audio.sample_rate,
                "channels": self.audio.channels,
                "device": self.audio.device,
                "capture_path": self.audio.capture_path,
            },
            "api": {
                "backend": self.api.backend,
                "api_key": self.api.api_key,
                "model": self.api.model,
                "language": self.api.language,
                "smart_format": self.api.smart_format,
                "timeout": self.api.timeout,
                "max_retries": self.api.max_retries,
            },
            "hotkey": {
                "trigger": self.hotkey.trigger,
                "grab": self.hotkey.grab,
            },
            "meter": {
                "offset": self.meter.offset,
                "range": self.meter.range,
                "smoothing": self.meter.smoothing,
                "interval": self.meter.interval,
            },
            "delivery": {
                "method": self.delivery.method,
                "delay_ms": self.delivery.delay_ms,
            },
            "pipeline": {
                "timeout": self.pipeline.timeout,
                "out_of_process": self.pipeline.out_of_process,
            },
        }

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        path = Path(path) if path else CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def validate(self) -> list[str]:
        """
        Validate the configuration.
        Returns a list of error messages (empty if valid).
        """
        errors = []

        # Validate audio settings
        if self.audio.sample_rate not in [8000, 16000, 22050, 44100, 48000]:
            errors.append(f"Invalid sample_rate: {self.audio.sample_rate}")
        if self.audio.channels not in [1, 2]:
            errors.append(f"Invalid channels: {self.audio.channels}")

        # Validate API settings
        if self.api.backend not in BACKENDS:
            errors.append(f"Invalid backend: {self.api.backend}")
        if is_placeholder_key(self.api.resolved_api_key()):
            errors.append("API key is not set. Run 'wavetalk setup' to configure.")
        if self.api.max_retries < 1:
            errors.append(f"max_retries must be at least 1: {self.api.max_retries}")

        if not self.hotkey.trigger:
            errors.append("Hotkey trigger is empty")

        if self.meter.range <= 0:
            errors.append(f"meter range must be positive: {self.meter.range}")
        if not 0.0 <= self.meter.smoothing < 1.0:
            errors.append(f"meter smoothing must be in [0, 1): {self.meter.smoothing}")
        if self.meter.interval <= 0:
            errors.append(f"meter interval must be positive: {self.meter.interval}")

        if self.delivery.method not in ("type", "paste"):
            errors.append(f"Invalid delivery method: {self.delivery.method}")

        if self.pipeline.timeout < 0:
            errors.append(f"pipeline timeout must not be negative: {self.pipeline.timeout}")

        return errors

    def is_valid(self) -> bool:
        """Check if configuration is valid."""
        return len(self.validate()) == 0

    def ensure_valid(self) -> None:
        """Raise ConfigurationError if the configuration has any issue."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")
