"""
Timers for playback: real event-loop time or virtual time.

PlaybackEngine never sleeps or polls on its own; it asks a Scheduler
for ``now()`` and for one-shot callbacks via ``call_later()``. Progress
polling, gap waits and end-of-clip detection all go through it.

    LoopScheduler     asyncio event-loop clock, for live playback
    VirtualScheduler  manually advanced clock, for tests and offline rendering
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional, Protocol, Tuple


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


class VirtualTimer:
    __slots__ = ("due", "callback", "cancelled")

    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """
    Deterministic clock that only moves when told to.

    Timers due at the same instant fire in the order they were scheduled.
    Callbacks may schedule further timers; those fire in the same
    ``advance()`` call if they fall inside the window.

    Example:
        >>> sched = VirtualScheduler()
        >>> fired = []
        >>> sched.call_later(0.5, lambda: fired.append(sched.now()))
        >>> sched.advance(1.0)
        >>> fired
        [0.5]
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._heap: List[Tuple[float, int, VirtualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualTimer:
        timer = VirtualTimer(self._now + max(0.0, delay), callback)
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    def next_due(self) -> Optional[float]:
        self._drop_cancelled()
        return self._heap[0][0] if self._heap else None

    def step(self) -> bool:
        """Jump to the next live timer and fire it. False when none is pending."""
        self._drop_cancelled()
        if not self._heap:
            return False
        due, _, timer = heapq.heappop(self._heap)
        self._now = max(self._now, due)
        timer.callback()
        return True

    def advance(self, dt: float) -> None:
        """Move the clock forward by ``dt``, firing every timer due on the way."""
        target = self._now + dt
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self.step()
        self._now = target

    def run_until_idle(self, limit: float = 3600.0) -> None:
        """Fire timers until none remain or the clock passes ``now + limit``."""
        stop_at = self._now + limit
        while True:
            due = self.next_due()
            if due is None or due > stop_at:
                break
            self.step()

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
