"""Time sources and timers for the presence engine.

Everything that waits (location ticks, notification expiry) goes through a
``Clock`` so the same code runs on the asyncio loop in production and on a
manually advanced clock in tests and replays.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Set


TimerCallback = Callable[[], Any]


class TimerHandle:
    """Cancellable handle for a pending timer. ``cancel`` is idempotent."""

    def __init__(self) -> None:
        self.cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()
            self._on_cancel = None


class Clock(ABC):
    @abstractmethod
    def time(self) -> float:
        """Seconds since the epoch."""

    @abstractmethod
    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        """Run ``callback`` once after ``delay_s``. Coroutines it returns are awaited."""

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.time(), tz=timezone.utc)

    def now_ms(self) -> int:
        return int(self.time() * 1000)


class LoopClock(Clock):
    """Wall clock backed by the running asyncio loop."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def time(self) -> float:
        return time.time()

    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle()

        def _fire() -> None:
            if handle.cancelled:
                return
            result = callback()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        loop_handle = loop.call_later(max(0.0, delay_s), _fire)
        handle._on_cancel = loop_handle.cancel
        return handle


class ManualClock(Clock):
    """Clock that only moves when ``advance`` is awaited."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._seq = 0
        self._timers: List[tuple] = []

    def time(self) -> float:
        return self._now

    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        self._seq += 1
        self._timers.append((self._now + max(0.0, delay_s), self._seq, handle, callback))
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._timers if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if t[0] <= target and not t[2].cancelled]
            if not due:
                break
            entry = min(due, key=lambda t: (t[0], t[1]))
            self._timers.remove(entry)
            fire_at, _, handle, callback = entry
            self._now = max(self._now, fire_at)
            result = callback()
            if inspect.isawaitable(result):
                await result
        self._timers = [t for t in self._timers if not t[2].cancelled]
        self._now = target


__all__ = ["Clock", "LoopClock", "ManualClock", "TimerHandle"]
