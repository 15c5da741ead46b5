"""
Tests for the encode+transcribe job runners.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from wavetalk.config import Config
from wavetalk.service import (
    SubprocessTranscriptionService,
    ThreadedTranscriptionService,
    create_service,
)
from wavetalk.transcriber import ServiceError, ServiceTimeout


class TestThreadedService:
    def test_runs_client_in_background(self, tmp_path):
        client = MagicMock()
        client.transcribe_file.return_value = "hello"
        service = ThreadedTranscriptionService(client)

        try:
            future = service.submit(tmp_path / "input.wav")
            assert future.result(timeout=2) == "hello"
        finally:
            service.shutdown()

        client.transcribe_file.assert_called_once_with(tmp_path / "input.wav")

    def test_errors_surface_on_future(self, tmp_path):
        client = MagicMock()
        client.transcribe_file.side_effect = ServiceError("503")
        service = ThreadedTranscriptionService(client)

        try:
            future = service.submit(tmp_path / "input.wav")
            with pytest.raises(ServiceError):
                future.result(timeout=2)
        finally:
            service.shutdown()


class TestSubprocessService:
    """Exit code contract of the out-of-process job."""

    @patch("wavetalk.service.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="hello world\n", stderr=""
        )
        service = SubprocessTranscriptionService(command=["wavetalk", "transcribe"])

        try:
            assert service.submit("/tmp/input.wav").result(timeout=2) == "hello world"
        finally:
            service.shutdown()

        assert mock_run.call_args.args[0] == ["wavetalk", "transcribe", "/tmp/input.wav"]

    @patch("wavetalk.service.subprocess.run")
    def test_failure_exit_code(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=1, stdout="", stderr="Error: Deepgram API error 401\n"
        )
        service = SubprocessTranscriptionService(command=["wavetalk", "transcribe"])

        try:
            with pytest.raises(ServiceError, match="401"):
                service.submit("/tmp/input.wav").result(timeout=2)
        finally:
            service.shutdown()

    @patch("wavetalk.service.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="wavetalk", timeout=5)
        service = SubprocessTranscriptionService(command=["wavetalk", "transcribe"], timeout=5)

        try:
            with pytest.raises(ServiceTimeout):
                service.submit("/tmp/input.wav").result(timeout=2)
        finally:
            service.shutdown()

    @patch("wavetalk.service.subprocess.run", side_effect=FileNotFoundError("no such file"))
    def test_missing_command(self, mock_run):
        service = SubprocessTranscriptionService(command=["not-installed"])

        try:
            with pytest.raises(ServiceError):
                service.submit("/tmp/input.wav").result(timeout=2)
        finally:
            service.shutdown()

    def test_default_command_runs_module(self):
        service = SubprocessTranscriptionService()
        try:
            assert service.command[-3:] == ["-m", "wavetalk", "transcribe"]
        finally:
            service.shutdown()


class TestCreateService:
    def test_in_process_by_default(self):
        service = create_service(Config())
        try:
            assert isinstance(service, ThreadedTranscriptionService)
        finally:
            service.shutdown()

    def test_out_of_process(self):
        config = Config()
        config.pipeline.out_of_process = True

        service = create_service(config)
        try:
            assert isinstance(service, SubprocessTranscriptionService)
        finally:
            service.shutdown()
