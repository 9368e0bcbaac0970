"""Timers and the per-client event queue.

A room client is single threaded in spirit: store callbacks, timer
events and user intents are posted to one :class:`EventQueue` and run one
at a time. Timers come from a :class:`TimerQueue`; tests drive a
:class:`ManualTimerQueue`, the server drives a :class:`SocketIOTimerQueue`
from a Socket.IO background task.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, List, Tuple

from photoguess import socketio


class TimerHandle:
    __slots__ = ('due', 'callback', 'args', 'cancelled')

    def __init__(self, due: float, callback: Callable, args: tuple):
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class TimerQueue:
    """One-shot timers ordered by due time (ties keep scheduling order)."""

    def __init__(self):
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable, *args) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback, args)
        with self._lock:
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def run_due(self, now: float) -> int:
        """Fire every timer due at ``now``; returns how many fired."""
        fired = 0
        while True:
            with self._lock:
                if not self._heap or self._heap[0][0] > now:
                    return fired
                _, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            fired += 1
            handle.callback(*handle.args)


class ManualTimerQueue(TimerQueue):
    """Timer queue on a fake clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        super().__init__()
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        target = self._now + seconds
        fired = 0
        # Step through due times so callbacks observe the clock they were set for
        while True:
            with self._lock:
                live = [h.due for _, _, h in self._heap if not h.cancelled]
            next_due = min(live) if live else None
            if next_due is None or next_due > target:
                break
            self._now = max(self._now, next_due)
            fired += self.run_due(self._now)
        self._now = target
        return fired


class SocketIOTimerQueue(TimerQueue):
    """Wall-clock timers polled from a Socket.IO background task."""

    def __init__(self, app, tick: float = 0.25):
        super().__init__()
        self.app = app
        self.tick = tick
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        socketio.start_background_task(self._loop)

    def stop(self) -> None:
        self._running = False

    def _loop(self) -> None:
        with self.app.app_context():
            while self._running:
                try:
                    self.run_due(self.now())
                except Exception:
                    self.app.logger.exception('[timer-error] timer callback failed')
                socketio.sleep(self.tick)


class EventQueue:
    """Runs posted handlers one at a time, in posting order.

    A handler posted while another is running (from a store callback fired
    by that handler's own write, or from another thread) waits until the
    running one returns.
    """

    def __init__(self):
        self._pending = deque()
        self._lock = threading.Lock()
        self._draining = False

    def post(self, handler: Callable, *args) -> None:
        with self._lock:
            self._pending.append((handler, args))
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._draining = False
                        return
                    handler, args = self._pending.popleft()
                handler(*args)
        except BaseException:
            with self._lock:
                self._draining = False
            raise
