"""Scheduling of periodic polls by interval and urgency."""

from __future__ import annotations

import heapq
import itertools
import math
import time
from collections.abc import Callable
from typing import Any

__all__ = ["PollPlan"]

# An averaging window of 1 is not supported by the update rule.
_AVERAGING_WINDOW = 10


def _monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def _div(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return -q if (a < 0) != (b < 0) else q


class _QueueItem:
    __slots__ = (
        "plan",
        "entry",
        "poll_interval",
        "poll_interval_sum",
        "avg_poll_interval",
        "request_duration",
        "due_at",
        "last_poll_at",
        "index",
        "poll_count",
    )

    def __init__(self, plan: PollPlan, entry: Any, index: int) -> None:
        self.plan = plan
        self.entry = entry
        self.poll_interval = int(entry.poll_interval)
        self.poll_interval_sum = 0
        self.avg_poll_interval = 0
        self.request_duration = 0
        self.due_at = plan._current_time
        self.last_poll_at = 0
        self.index = index
        self.poll_count = 0

    def update(self, new_interval: int, request_duration: int) -> None:
        # moving average of the actual poll interval
        self.poll_count += 1
        if self.poll_count > 1:
            self.poll_interval_sum += new_interval
            if self.poll_count > _AVERAGING_WINDOW:
                self.poll_interval_sum -= self.avg_poll_interval
                self.poll_count = _AVERAGING_WINDOW
            self.avg_poll_interval = _div(self.poll_interval_sum, self.poll_count)
        self.request_duration = request_duration
        self.due_at = self.plan._current_time + self.poll_interval

    def importance(self) -> int:
        v = int(self.plan._current_time - self.due_at) * 1000
        if self.poll_interval != 0:
            # the longer the poll interval, the lower the priority
            v = _div(v, self.poll_interval)
            if self.avg_poll_interval != 0:
                # compensate for polls lagging behind the requested interval
                v *= self.avg_poll_interval
                v = _div(v, self.poll_interval)
        avg_request = self.plan._avg_request_duration
        if self.request_duration != 0 and avg_request != 0:
            # slower requests get lower priority
            v *= avg_request
            v = _div(v, self.request_duration)
        return v


class PollPlan:
    """Decides which entries to poll and in what order.

    Entries carry a ``poll_interval`` in milliseconds; the clock returns
    milliseconds.
    """

    def __init__(self, clock: Callable[[], int] = _monotonic_ms) -> None:
        self._clock = clock
        self._current_time = clock()
        self._avg_request_duration = 0
        self._queue: list[tuple[int, int, int, _QueueItem]] = []
        self._seq = itertools.count()

    def _push(self, item: _QueueItem) -> None:
        heapq.heappush(self._queue, (item.due_at, item.index, next(self._seq), item))

    def add_entry(self, entry: Any) -> None:
        """Schedule an entry; it is due at once."""
        self._push(_QueueItem(self, entry, len(self._queue)))

    def process_pending(self, callback: Callable[[Any], None]) -> None:
        """Call ``callback`` for every due entry, most important first."""
        self._current_time = self._clock()
        pending = []
        while self._queue and self._queue[0][0] <= self._current_time:
            pending.append(heapq.heappop(self._queue)[3])
        pending.sort(key=lambda item: (-item.importance(), item.index))

        total = 0
        for item in pending:
            start = self._clock()
            callback(item.entry)
            duration = int(self._clock() - start)
            interval = int(start - item.last_poll_at) if item.poll_count > 1 else 0
            item.update(interval, duration)
            total += duration
            self._push(item)

        if pending:
            self._avg_request_duration = total // len(pending)

    def poll_is_due(self) -> bool:
        """True when the earliest entry is due now."""
        self._current_time = self._clock()
        return bool(self._queue) and self._queue[0][0] <= self._current_time

    def next_poll_time(self) -> float:
        """Time of the next poll; infinity for an empty plan."""
        if not self._queue:
            return math.inf
        if self.poll_is_due():
            return self._current_time
        return self._queue[0][0]

    def reset(self) -> None:
        """Remove all entries."""
        self._avg_request_duration = 0
        self._queue.clear()

    def modify(self, predicate: Callable[[Any], bool]) -> None:
        """Offer entries in due order to ``predicate`` until it returns True.

        The entries stay scheduled.
        """
        taken = []
        while self._queue and not predicate(self._queue[0][3].entry):
            taken.append(heapq.heappop(self._queue))
        for item in taken:
            heapq.heappush(self._queue, item)