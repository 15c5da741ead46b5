"""
Tests for the speech-to-text clients.

requests and the groq SDK are mocked; nothing goes over the network.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from wavetalk.config import Config, ConfigurationError
from wavetalk.transcriber import (
    DEEPGRAM_URL,
    DeepgramClient,
    GroqClient,
    ServiceError,
    ServiceTimeout,
    content_type_for,
    create_client,
    extract_transcript,
)


def deepgram_payload(transcript):
    return {
        "metadata": {"duration": 1.5},
        "results": {"channels": [{"alternatives": [{"transcript": transcript, "confidence": 0.99}]}]},
    }


def make_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def http():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "wavetalk_input.wav"
    path.write_bytes(b"RIFF....WAVEfmt fake audio")
    return path


class TestExtractTranscript:
    """Pulling the first alternative out of a Deepgram response."""

    def test_first_alternative(self):
        assert extract_transcript(deepgram_payload("hello world")) == "hello world"

    @pytest.mark.parametrize("payload", [
        {},
        {"results": {}},
        {"results": {"channels": []}},
        {"results": {"channels": [{"alternatives": []}]}},
        {"results": {"channels": [{"alternatives": [{}]}]}},
        {"results": {"channels": [{"alternatives": [{"transcript": None}]}]}},
        [],
        None,
    ])
    def test_missing_structure_is_empty(self, payload):
        assert extract_transcript(payload) == ""


class TestContentType:
    def test_known_suffixes(self):
        assert content_type_for("/tmp/a.wav") == "audio/wav"
        assert content_type_for("/tmp/a.M4A") == "audio/m4a"

    def test_unknown_suffix(self):
        assert content_type_for("/tmp/a.bin") == "application/octet-stream"


class TestDeepgramClient:
    """Request shape and error mapping."""

    def test_request_shape(self, http, audio_file):
        http.post.return_value = make_response(payload=deepgram_payload("hello"))
        client = DeepgramClient(api_key="dg-secret", model="nova-2", language="ru", session=http)

        assert client.transcribe_file(audio_file) == "hello"

        http.post.assert_called_once()
        args, kwargs = http.post.call_args
        assert args[0] == DEEPGRAM_URL
        assert kwargs["params"] == {"model": "nova-2", "language": "ru", "smart_format": "true"}
        assert kwargs["headers"]["Authorization"] == "Token dg-secret"
        assert kwargs["headers"]["Content-Type"] == "audio/wav"
        assert kwargs["data"] == audio_file.read_bytes()

    def test_smart_format_disabled(self, http):
        http.post.return_value = make_response(payload=deepgram_payload("x"))
        client = DeepgramClient(api_key="dg-secret", smart_format=False, session=http)

        client.transcribe_audio(b"data")

        assert http.post.call_args.kwargs["params"]["smart_format"] == "false"

    def test_result_metadata(self, http):
        http.post.return_value = make_response(payload=deepgram_payload("  padded  "))
        client = DeepgramClient(api_key="dg-secret", session=http)

        result = client.transcribe_audio(b"data")

        assert result.text == "padded"
        assert result.duration == 1.5

    def test_absent_transcript_is_empty(self, http):
        http.post.return_value = make_response(payload={"metadata": {}})
        client = DeepgramClient(api_key="dg-secret", session=http)

        assert client.transcribe_audio(b"data").text == ""

    @pytest.mark.parametrize("api_key", ["", "   ", "YOUR_DEEPGRAM_API_KEY_HERE", "YOUR_API_KEY_HERE"])
    def test_placeholder_key_never_hits_network(self, http, audio_file, api_key):
        client = DeepgramClient(api_key=api_key, session=http)

        with pytest.raises(ConfigurationError):
            client.transcribe_file(audio_file)

        http.post.assert_not_called()

    def test_client_error_status(self, http):
        http.post.return_value = make_response(status_code=401, text="Invalid credentials")
        client = DeepgramClient(api_key="dg-secret", max_retries=3, session=http)

        with pytest.raises(ServiceError, match="401"):
            client.transcribe_audio(b"data")

        # 4xx is not retried
        assert http.post.call_count == 1

    def test_non_json_body(self, http):
        http.post.return_value = make_response(payload=ValueError("Expecting value"))
        client = DeepgramClient(api_key="dg-secret", session=http)

        with pytest.raises(ServiceError, match="Malformed"):
            client.transcribe_audio(b"data")

    def test_network_error(self, http):
        http.post.side_effect = requests.exceptions.ConnectionError("connection refused")
        client = DeepgramClient(api_key="dg-secret", session=http)

        with pytest.raises(ServiceError, match="Network error"):
            client.transcribe_audio(b"data")

    def test_timeout(self, http):
        http.post.side_effect = requests.exceptions.ReadTimeout("read timed out")
        client = DeepgramClient(api_key="dg-secret", timeout=5, session=http)

        with pytest.raises(ServiceTimeout):
            client.transcribe_audio(b"data")

    @patch("wavetalk.transcriber.time.sleep")
    def test_server_errors_are_retried(self, mock_sleep, http):
        http.post.side_effect = [
            make_response(status_code=503, text="unavailable"),
            make_response(payload=deepgram_payload("second try")),
        ]
        client = DeepgramClient(api_key="dg-secret", max_retries=2, session=http)

        assert client.transcribe_audio(b"data").text == "second try"
        assert http.post.call_count == 2
        mock_sleep.assert_called_once_with(1)

    @patch("wavetalk.transcriber.time.sleep")
    def test_retries_exhausted(self, mock_sleep, http):
        http.post.return_value = make_response(status_code=500, text="oops")
        client = DeepgramClient(api_key="dg-secret", max_retries=3, session=http)

        with pytest.raises(ServiceError, match="500"):
            client.transcribe_audio(b"data")
        assert http.post.call_count == 3

    def test_missing_file(self, http, tmp_path):
        client = DeepgramClient(api_key="dg-secret", session=http)

        with pytest.raises(ServiceError, match="Cannot read"):
            client.transcribe_file(tmp_path / "missing.wav")


class TestGroqClient:
    """Groq backend, with the SDK class patched out."""

    @patch("wavetalk.transcriber.Groq")
    def test_transcribe_file(self, mock_groq, audio_file):
        response = MagicMock()
        response.text = " hello from groq "
        mock_groq.return_value.audio.transcriptions.create.return_value = response
        client = GroqClient(api_key="gsk-secret", language="en")

        assert client.transcribe_file(audio_file) == "hello from groq"

        kwargs = mock_groq.return_value.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "whisper-large-v3-turbo"
        assert kwargs["language"] == "en"
        assert kwargs["file"] == ("wavetalk_input.wav", audio_file.read_bytes())

    @patch("wavetalk.transcriber.Groq")
    def test_placeholder_key(self, mock_groq, audio_file):
        client = GroqClient(api_key="YOUR_GROQ_API_KEY")

        with pytest.raises(ConfigurationError):
            client.transcribe_file(audio_file)

        mock_groq.assert_not_called()


class TestCreateClient:
    def test_deepgram_backend(self, monkeypatch):
        monkeypatch.delenv("WAVETALK_API_KEY", raising=False)
        monkeypatch.setenv("DEEPGRAM_API_KEY", "from-env")
        config = Config()
        config.api.language = "ru"

        client = create_client(config)

        assert isinstance(client, DeepgramClient)
        assert client.api_key == "from-env"
        assert client.language == "ru"

    def test_groq_backend(self, monkeypatch):
        monkeypatch.delenv("WAVETALK_API_KEY", raising=False)
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        config = Config()
        config.api.backend = "groq"
        config.api.api_key = "gsk-file"

        client = create_client(config)

        assert isinstance(client, GroqClient)
        assert client.api_key == "gsk-file"

    def test_unknown_backend(self):
        config = Config()
        config.api.backend = "whisper.cpp"

        with pytest.raises(ConfigurationError):
            create_client(config)
