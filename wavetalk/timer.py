"""
Periodic background task with a cancellation handle.
"""

import threading
from typing import Callable, Optional

from wavetalk.log import get_logger


logger = get_logger(__name__)


class PeriodicTask:
    """
    Calls func every interval seconds on a daemon thread until cancelled.

    Usage:
        task = PeriodicTask(0.04, poll_level)
        task.start()
        # ...
        task.cancel()
    """

    def __init__(self, interval: float, func: Callable[[], None], name: str = "wavetalk-periodic"):
        if interval <= 0:
            raise ValueError(f"interval must be positive: {interval}")
        self.interval = interval
        self.func = func
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self.interval):
            try:
                self.func()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def cancel(self, wait: bool = False) -> None:
        """Stop the task. With wait=True, block until the thread exits."""
        self._stop_event.set()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1)

    @property
    def is_running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._stop_event.is_set()
        )
