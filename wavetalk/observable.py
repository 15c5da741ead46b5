"""
Read-only observables published to presentation consumers.

The pipeline writes; a UI layer only reads or subscribes.
"""

import threading
from typing import Callable, Generic, TypeVar

from wavetalk.log import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """
    A value with change notifications.

    Usage:
        level = Observable(0.0)
        unsubscribe = level.subscribe(lambda value: print(value))
        level.set(0.5)  # prints 0.5
        unsubscribe()
    """

    def __init__(self, initial: T):
        self._value = initial
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register callback for changes. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def set(self, value: T) -> None:
        """Update the value and notify subscribers if it changed."""
        with self._lock:
            if value == self._value:
                return
            self._value = value
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                # A broken view must not take the pipeline down with it
                logger.exception("Observable subscriber failed")
