"""
Speech-to-text API clients for WaveTalk.

DeepgramClient posts the raw capture file to Deepgram's pre-recorded
endpoint; GroqClient uses Groq's hosted Whisper. Both refuse to run
without a real API key, before any network attempt.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import requests
from groq import Groq, APIError, APIConnectionError, RateLimitError

from wavetalk.config import Config, ConfigurationError, is_placeholder_key
from wavetalk.log import get_logger


logger = get_logger(__name__)

DEEPGRAM_URL = "https://api.deepgram.com/v1/listen"

CONTENT_TYPES = {
    ".wav": "audio/wav",
    ".m4a": "audio/m4a",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
}


class ServiceError(Exception):
    """Exception raised for transcription service errors."""
    pass


class ServiceTimeout(ServiceError):
    """The transcription service did not answer in time."""
    pass


@dataclass
class TranscriptionResult:
    """Result from audio transcription."""
    text: str
    duration: Optional[float] = None  # Audio duration in seconds
    language: Optional[str] = None


def content_type_for(path: Union[str, Path]) -> str:
    """Pick the Content-Type for an audio file from its suffix."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def extract_transcript(payload: dict) -> str:
    """
    Pull results.channels[0].alternatives[0].transcript out of a Deepgram response.

    Missing structure yields an empty string rather than an error.
    """
    try:
        transcript = payload["results"]["channels"][0]["alternatives"][0]["transcript"]
    except (KeyError, IndexError, TypeError):
        return ""
    return transcript or ""


def _read_audio(path: Union[str, Path]) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ServiceError(f"Cannot read audio file {path}: {e}") from e


class DeepgramClient:
    """
    Client for the Deepgram pre-recorded transcription API.

    Usage:
        client = DeepgramClient(api_key="your-key", language="en")
        text = client.transcribe_file("/tmp/wavetalk_input.wav")
    """

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        language: str = "en",
        smart_format: bool = True,
        timeout: float = 30.0,
        max_retries: int = 1,
        url: str = DEEPGRAM_URL,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the Deepgram client.

        Args:
            api_key: Deepgram API key
            model: Model identifier, e.g. "nova-2"
            language: Language code, e.g. "en" or "ru"
            smart_format: Ask the API for punctuation and formatting
            timeout: Request timeout in seconds
            max_retries: Total attempts for transient failures (1 = no retry)
        """
        self.api_key = api_key
        self.model = model
        self.language = language
        self.smart_format = smart_format
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.url = url
        self._session = session or requests.Session()

    def _require_key(self) -> None:
        if is_placeholder_key(self.api_key):
            raise ConfigurationError(
                "Deepgram API key is not set. Run 'wavetalk setup' or set DEEPGRAM_API_KEY."
            )

    def _params(self) -> dict:
        return {
            "model": self.model,
            "language": self.language,
            "smart_format": "true" if self.smart_format else "false",
        }

    def transcribe_audio(self, audio_data: bytes, content_type: str = "audio/wav") -> TranscriptionResult:
        """
        Transcribe audio bytes.

        Raises:
            ConfigurationError: If the API key is missing or a placeholder
            ServiceError: On network failure, non-2xx status or a non-JSON body
        """
        self._require_key()

        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": content_type,
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self._session.post(
                    self.url,
                    params=self._params(),
                    headers=headers,
                    data=audio_data,
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout as e:
                last_error = ServiceTimeout(f"Deepgram request timed out after {self.timeout}s")
                last_error.__cause__ = e
            except requests.exceptions.RequestException as e:
                last_error = ServiceError(f"Network error: {e}")
                last_error.__cause__ = e
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = ServiceError(
                        f"Deepgram API error {response.status_code}: {response.text[:200]}"
                    )
                elif not 200 <= response.status_code < 300:
                    # Client errors are not retried
                    raise ServiceError(
                        f"Deepgram API error {response.status_code}: {response.text[:200]}"
                    )
                else:
                    try:
                        payload = response.json()
                    except ValueError as e:
                        raise ServiceError(f"Malformed response from Deepgram: {e}") from e
                    metadata = payload.get("metadata") if isinstance(payload, dict) else None
                    return TranscriptionResult(
                        text=extract_transcript(payload).strip(),
                        duration=(metadata or {}).get("duration"),
                        language=self.language,
                    )

            if attempt < self.max_retries - 1:
                wait_time = min(2 ** attempt, 10)  # Exponential backoff, max 10s
                logger.warning("Deepgram attempt %d failed (%s), retrying in %ss",
                               attempt + 1, last_error, wait_time)
                time.sleep(wait_time)

        raise last_error

    def transcribe_file(self, path: Union[str, Path]) -> str:
        """Read an audio file and return its transcript text."""
        self._require_key()
        audio_data = _read_audio(path)
        return self.transcribe_audio(audio_data, content_type=content_type_for(path)).text


class GroqClient:
    """
    Client for Groq API (Whisper STT).

    Usage:
        client = GroqClient(api_key="your-key")
        text = client.transcribe_file("/tmp/wavetalk_input.wav")
    """

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-large-v3-turbo",
        language: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 1,
    ):
        """
        Initialize the Groq client.

        Args:
            api_key: Groq API key
            model: Model to use for transcription
            language: Optional language hint (ISO-639-1, e.g., "en")
            timeout: Request timeout in seconds
            max_retries: Total attempts for transient failures (1 = no retry)
        """
        self.api_key = api_key
        self.model = model
        self.language = language
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._client: Optional[Groq] = None

    def _get_client(self) -> Groq:
        if is_placeholder_key(self.api_key):
            raise ConfigurationError(
                "Groq API key is not set. Run 'wavetalk setup' or set GROQ_API_KEY."
            )
        if self._client is None:
            # Retries are ours, not the SDK's
            self._client = Groq(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def transcribe_audio(self, audio_data: bytes, filename: str = "audio.wav") -> TranscriptionResult:
        """
        Transcribe audio data to text.

        Raises:
            ConfigurationError: If the API key is missing or a placeholder
            ServiceError: If transcription fails after retries
        """
        client = self._get_client()

        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            params = {
                "file": (filename, audio_data),
                "model": self.model,
                "response_format": "verbose_json",
                "temperature": 0.0,
            }
            if self.language:
                params["language"] = self.language

            try:
                response = client.audio.transcriptions.create(**params)
                return TranscriptionResult(
                    text=response.text.strip() if response.text else "",
                    duration=getattr(response, 'duration', None),
                    language=getattr(response, 'language', self.language),
                )

            except RateLimitError as e:
                last_error = e

            except APIConnectionError as e:
                last_error = e

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                # Don't retry client errors (4xx)
                if status_code and 400 <= status_code < 500:
                    raise ServiceError(f"API error: {e.message}") from e
                last_error = e

            if attempt < self.max_retries - 1:
                time.sleep(min(2 ** attempt, 10))

        raise ServiceError(
            f"Transcription failed after {self.max_retries} attempt(s): {last_error}"
        ) from last_error

    def transcribe_file(self, path: Union[str, Path]) -> str:
        """Read an audio file and return its transcript text."""
        self._get_client()
        audio_data = _read_audio(path)
        return self.transcribe_audio(audio_data, filename=Path(path).name).text


def create_client(config: Config):
    """Build the transcription client selected by config.api.backend."""
    api = config.api
    api_key = api.resolved_api_key()

    if api.backend == "deepgram":
        return DeepgramClient(
            api_key=api_key,
            model=api.model,
            language=api.language,
            smart_format=api.smart_format,
            timeout=api.timeout,
            max_retries=api.max_retries,
        )
    if api.backend == "groq":
        return GroqClient(
            api_key=api_key,
            model=api.model,
            language=api.language or None,
            timeout=api.timeout,
            max_retries=api.max_retries,
        )
    raise ConfigurationError(f"Unknown transcription backend: {api.backend}")
