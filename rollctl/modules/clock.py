"""Time source used by every deadline and polling loop.

All waiting in rollctl goes through a ``Clock`` so that timeouts and retry
counts can be tested deterministically with ``FakeClock``.
"""
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def now(self) -> float:
        """Return the current time in seconds."""

    @abstractmethod
    def after(self, seconds: float) -> threading.Event:
        """Return an event that becomes set once ``seconds`` have elapsed."""

    @abstractmethod
    def sleep(self, seconds: float, interrupt: Optional[threading.Event] = None) -> None:
        """Block for ``seconds``, returning early if ``interrupt`` is set."""


class RealClock(Clock):
    """Clock backed by the monotonic system clock."""

    def now(self) -> float:
        return time.monotonic()

    def after(self, seconds: float) -> threading.Event:
        fired = threading.Event()
        if seconds <= 0:
            fired.set()
            return fired
        timer = threading.Timer(seconds, fired.set)
        timer.daemon = True
        timer.start()
        return fired

    def sleep(self, seconds: float, interrupt: Optional[threading.Event] = None) -> None:
        if seconds <= 0:
            return
        if interrupt is None:
            time.sleep(seconds)
        else:
            interrupt.wait(seconds)


class FakeClock(Clock):
    """Controllable clock for tests.

    ``sleep`` never blocks; it advances simulated time by the requested
    duration and records the call. ``after`` returns an already-set event and,
    when ``advance_on_after`` is true, advances simulated time as well.
    Either behaviour can be replaced with ``after_func`` / ``sleep_func``.
    """

    def __init__(self, start: float = 0.0, advance_on_after: bool = False):
        self.current = start
        self.advance_on_after = advance_on_after
        self.after_func: Optional[Callable[[float], threading.Event]] = None
        self.sleep_func: Optional[Callable[[float], None]] = None
        self.sleeps: List[float] = []
        self.afters: List[float] = []
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self.current

    def after(self, seconds: float) -> threading.Event:
        self.afters.append(seconds)
        if self.after_func is not None:
            return self.after_func(seconds)
        if self.advance_on_after:
            self.advance(seconds)
        fired = threading.Event()
        fired.set()
        return fired

    def sleep(self, seconds: float, interrupt: Optional[threading.Event] = None) -> None:
        self.sleeps.append(seconds)
        if self.sleep_func is not None:
            self.sleep_func(seconds)
            return
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        """Move simulated time forward."""
        with self._lock:
            self.current += seconds

    @property
    def sleep_count(self) -> int:
        return len(self.sleeps)
