"""
Cooperative single-threaded scheduler.

Runs periodic tasks (sample poll, timer tick, connectivity probe) and
one-shot delayed callbacks on one logical thread. A task that raises is
logged and its cycle skipped; it never stalls the other tasks.

Time is injected so that tests can drive the loop with ManualClock.
"""

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ManualClock:
    """
    Deterministic clock for tests and simulations.

    Use as both ``clock`` and ``sleep`` of a Scheduler: sleeping advances
    the clock instantly.
    """

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.now += seconds

    def advance(self, seconds: float) -> None:
        self.sleep(seconds)


@dataclass(order=True)
class ScheduledTask:
    due: float
    seq: int
    name: str = field(compare=False)
    callback: Callable[[], None] = field(compare=False, repr=False)
    interval: Optional[float] = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    """
    Min-heap of due tasks.

    Periodic tasks keep a fixed cadence; if the loop falls more than one
    interval behind, missed cycles are skipped rather than replayed.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.clock = clock
        self.sleep = sleep
        self._heap: List[ScheduledTask] = []
        self._seq = itertools.count()
        self._running = False

    def every(
        self,
        interval_s: float,
        callback: Callable[[], None],
        name: str = "",
        run_immediately: bool = False,
    ) -> ScheduledTask:
        """Schedule ``callback`` every ``interval_s`` seconds."""
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        first = self.clock() + (0.0 if run_immediately else interval_s)
        task = ScheduledTask(first, next(self._seq), name or callback.__name__, callback, interval_s)
        heapq.heappush(self._heap, task)
        return task

    def call_later(self, delay_s: float, callback: Callable[[], None], name: str = "") -> ScheduledTask:
        """Schedule a one-shot ``callback`` after ``delay_s`` seconds."""
        task = ScheduledTask(
            self.clock() + max(0.0, delay_s), next(self._seq), name or callback.__name__, callback
        )
        heapq.heappush(self._heap, task)
        return task

    def cancel(self, task: Optional[ScheduledTask]) -> None:
        if task is not None:
            task.cancel()

    def cancel_all(self) -> None:
        for task in self._heap:
            task.cancel()
        self._heap.clear()

    def next_due(self) -> Optional[float]:
        """Due time of the earliest live task, or None."""
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].due if self._heap else None

    @property
    def pending(self) -> int:
        return sum(1 for t in self._heap if not t.cancelled)

    def run_pending(self) -> int:
        """Run every task due at the current clock time. Returns the count run."""
        now = self.clock()
        ran = 0
        while True:
            due = self.next_due()
            if due is None or due > now:
                break
            task = heapq.heappop(self._heap)

            if task.periodic:
                task.due += task.interval
                if task.due <= now:
                    task.due = now + task.interval
                task.seq = next(self._seq)
                heapq.heappush(self._heap, task)

            try:
                task.callback()
            except Exception:
                logger.exception(f"Scheduled task '{task.name}' failed; skipping this cycle")
            ran += 1
        return ran

    def run_until(self, deadline: float) -> None:
        """Run the loop until the clock reaches ``deadline`` or stop() is called."""
        self._running = True
        while self._running:
            now = self.clock()
            if now >= deadline:
                break
            due = self.next_due()
            wake = deadline if due is None else min(due, deadline)
            self.sleep(max(0.0, wake - now))
            self.run_pending()
        self._running = False

    def run_for(self, duration_s: float) -> None:
        self.run_until(self.clock() + duration_s)

    def stop(self) -> None:
        self._running = False
