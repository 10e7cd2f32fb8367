"""Cancellable one-shot timers."""
from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(interval: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


class SingleTimer:
    """Holds at most one live timer; starting a new one cancels the previous."""

    def __init__(self, factory: TimerFactory = thread_timer) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._current: Optional[TimerHandle] = None

    def start(self, interval: float, callback: Callable[[], None]) -> None:
        timer = self._factory(interval, callback)
        with self._lock:
            previous, self._current = self._current, timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            previous, self._current = self._current, None
        if previous is not None:
            previous.cancel()

    @property
    def active(self) -> bool:
        return self._current is not None
