from __future__ import annotations

# Clocks and periodic tickers.
#
# Everything time-dependent in the core takes a `Clock` so tests can move time
# by hand instead of sleeping. Periodic work runs on `Ticker` threads: an
# Event-wait loop, so `stop()` wakes it at once.

import logging
import threading
import time
from typing import Callable, ContextManager, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        self._now = float(value)

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now


class Ticker:
    """Call `callback` every `interval` seconds on a daemon thread.

    Exceptions from the callback are logged and the loop keeps going. If `lock`
    is given, each call runs while holding it so ticks never interleave with
    other work on the same state.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], object],
        *,
        name: str = "ticker",
        lock: ContextManager | None = None,
        fire_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.callback = callback
        self.name = name
        self._lock = lock
        self._fire_immediately = fire_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive() and not self._stop_event.is_set()

    def start(self) -> "Ticker":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, *, wait: bool = True) -> None:
        """Stop the loop. With `wait`, join the thread (up to a second)."""
        self._stop_event.set()
        t = self._thread
        if wait and t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=1.0)

    def _loop(self) -> None:
        if not self._fire_immediately:
            self._stop_event.wait(self.interval)
        while not self._stop_event.is_set():
            self._run_once()
            self._stop_event.wait(self.interval)

    def _run_once(self) -> None:
        try:
            if self._lock is not None:
                with self._lock:
                    # May have been stopped while waiting for the lock.
                    if not self._stop_event.is_set():
                        self.callback()
            else:
                self.callback()
        except Exception:
            logger.exception("%s: tick failed", self.name)


# (interval, callback) -> stop function
RepeatingTimerFactory = Callable[[float, Callable[[], object]], Callable[[], None]]


def thread_timer_factory(lock: ContextManager | None = None) -> RepeatingTimerFactory:
    """Build a factory that backs each repeating timer with a `Ticker`."""

    def start(interval: float, callback: Callable[[], object]) -> Callable[[], None]:
        ticker = Ticker(interval, callback, name="repeating-alert", lock=lock).start()
        return ticker.stop

    return start
