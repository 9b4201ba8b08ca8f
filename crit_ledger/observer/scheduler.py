"""
Cooperative scheduling for the dispatch loop, store throttling and
restoration retries. Everything runs on one thread; a callback never
yields between checking and setting a marker.

AsyncioScheduler runs timers on an asyncio event loop. ManualScheduler is
a virtual clock advanced explicitly, for tests and for embedders that
drive their own loop.
"""

import asyncio
import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 1 / 60


class TimerHandle:
    """Cancellable handle for one scheduled callback."""

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False
        self._native = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._native is not None:
            self._native.cancel()

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def _run(self) -> None:
        if self.cancelled or self.fired:
            return
        self.fired = True
        self.callback()


class Scheduler(ABC):
    frame_interval = FRAME_INTERVAL

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        pass

    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds."""
        pass

    def defer_frames(self, callback: Callable[[], None], frames: int = 2) -> TimerHandle:
        """Run callback after `frames` render frames."""
        return self.call_later(frames * self.frame_interval, callback)

    def wall_time_ms(self) -> int:
        """Epoch milliseconds for persisted timestamps."""
        return int(time.time() * 1000)


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by an asyncio event loop.

    Binds to the given loop, else to the loop running when it is first
    used. Outside a running loop it creates its own loop; the embedder
    drives it (owns_loop is True) and close() releases it.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self.owns_loop = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._loop = asyncio.new_event_loop()
                self.owns_loop = True
        return self._loop

    def close(self) -> None:
        if self.owns_loop and self._loop is not None and not self._loop.is_closed():
            self._loop.close()
        self._loop = None
        self.owns_loop = False

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback)
        handle._native = self.loop.call_later(max(0.0, delay), handle._run)
        return handle

    def now(self) -> float:
        return self.loop.time()


class ManualScheduler(Scheduler):
    """
    Virtual clock. Timers fire only inside advance()/run_all(), in due
    order, including timers scheduled by callbacks that fall due within
    the same advance window.
    """

    def __init__(self, start: float = 0.0, wall_start_ms: int = 1_700_000_000_000):
        self._now = start
        self._start = start
        self._wall_start_ms = wall_start_ms
        self._counter = itertools.count()
        self._queue: List[Tuple[float, int, TimerHandle]] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    def now(self) -> float:
        return self._now

    def wall_time_ms(self) -> int:
        return self._wall_start_ms + int((self._now - self._start) * 1000)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers. Returns how many fired."""
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if handle.active:
                handle._run()
                fired += 1
        self._now = target
        return fired

    def run_all(self, limit: float = 3600.0) -> int:
        """Fire everything pending within `limit` seconds of virtual time."""
        return self.advance(limit)

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.active)
