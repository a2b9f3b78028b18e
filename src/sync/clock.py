"""Timer sources for the client surface.

Everything time-driven on a surface (thinking delays, the echo suppression
window, secondary UI cues) schedules through a ``Clock`` so tests can
fast-forward instead of sleeping.
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds."""


class AsyncioClock(Clock):
    """Clock backed by the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return self._get_loop().call_later(max(delay, 0.0), callback, *args)


@dataclass(order=True)
class _ManualTimer:
    when: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(compare=False, default=())
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock that only moves when ``advance`` is called."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        timer = _ManualTimer(self._now + max(delay, 0.0), next(self._seq), callback, args)
        heapq.heappush(self._timers, timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order.

        Timers scheduled by a callback fire in the same call when they fall
        inside the window.
        """
        target = self._now + seconds
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.when
            timer.callback(*timer.args)
        self._now = target

    def pending(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)
