"""
Encode+transcribe job submission.

The pipeline only knows submit(path) -> Future[str]. The job runs either
on a worker thread in this process or as a separate `wavetalk transcribe`
process; either way the caller never waits for it inline.
"""

import subprocess
import sys
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from wavetalk.config import Config
from wavetalk.log import get_logger
from wavetalk.transcriber import ServiceError, ServiceTimeout, create_client


logger = get_logger(__name__)


class TranscriptionClient(Protocol):
    def transcribe_file(self, path: Union[str, Path]) -> str: ...


class TranscriptionService(Protocol):
    def submit(self, path: Union[str, Path]) -> "Future[str]": ...

    def shutdown(self) -> None: ...


class ThreadedTranscriptionService:
    """
    Runs client.transcribe_file() on a background executor.

    Usage:
        service = ThreadedTranscriptionService(DeepgramClient(api_key="..."))
        future = service.submit("/tmp/wavetalk_input.wav")
    """

    def __init__(self, client: TranscriptionClient, max_workers: int = 1):
        self.client = client
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="wavetalk-transcribe",
        )

    def submit(self, path: Union[str, Path]) -> "Future[str]":
        logger.debug("Submitting %s for transcription", path)
        return self._executor.submit(self.client.transcribe_file, path)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class SubprocessTranscriptionService:
    """
    Runs the encode+transcribe step as an out-of-process job.

    The command gets the capture path appended and must follow the
    `wavetalk transcribe` contract: exit 0 with the transcript on stdout,
    exit 1 with a message on stderr.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
        max_workers: int = 1,
    ):
        self.command = list(command) if command else [sys.executable, "-m", "wavetalk", "transcribe"]
        self.timeout = timeout or None
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="wavetalk-job",
        )

    def _run(self, path: Union[str, Path]) -> str:
        cmd = self.command + [str(path)]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ServiceTimeout(f"Transcription job timed out after {self.timeout}s") from e
        except OSError as e:
            raise ServiceError(f"Cannot run transcription job {cmd[0]}: {e}") from e

        if result.returncode != 0:
            message = result.stderr.strip() or f"exit code {result.returncode}"
            raise ServiceError(f"Transcription job failed: {message}")

        return result.stdout.strip()

    def submit(self, path: Union[str, Path]) -> "Future[str]":
        logger.debug("Starting transcription job for %s", path)
        return self._executor.submit(self._run, path)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def create_service(config: Config) -> TranscriptionService:
    """Build the service selected by config.pipeline.out_of_process."""
    if config.pipeline.out_of_process:
        return SubprocessTranscriptionService()
    return ThreadedTranscriptionService(create_client(config))
