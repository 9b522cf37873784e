import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable


@dataclass(order=True)
class ScheduledTask:
    due_at: datetime
    sequence: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(default=(), compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Deferred callbacks on a clock that only moves when told to.

    Tasks due at the same instant run in scheduling order. Callbacks may
    schedule further tasks; those run within the same ``advance`` call if
    they fall due before its end.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime.now(timezone.utc)
        self._queue: list[ScheduledTask] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay_seconds: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        with self._lock:
            task = ScheduledTask(
                due_at=self._now + timedelta(seconds=max(0.0, delay_seconds)),
                sequence=next(self._sequence),
                callback=callback,
                args=args,
            )
            heapq.heappush(self._queue, task)
            return task

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every task that falls due. Returns tasks run."""
        with self._lock:
            target = self._now + timedelta(seconds=seconds)
        ran = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0].due_at > target:
                    self._now = target
                    return ran
                task = heapq.heappop(self._queue)
                self._now = max(self._now, task.due_at)
            if task.cancelled:
                continue
            task.callback(*task.args)
            ran += 1

    def run_pending(self) -> int:
        """Run tasks already due without moving the clock."""
        return self.advance(0)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._queue if not task.cancelled)
