"""Self-tracked request budget over a rolling window."""
from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque


class RequestBudget:
    """Track requests made in the trailing ``window`` seconds.

    The budget never sleeps. Callers ask :meth:`wait_time` before issuing a
    request and delay themselves when it is positive.
    """

    __slots__ = ("_limit", "_window", "_clock", "_stamps")

    def __init__(
        self,
        *,
        limit: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self._limit = int(limit)
        self._window = float(window)
        self._clock = clock
        self._stamps: Deque[float] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window(self) -> float:
        return self._window

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def record(self) -> None:
        now = self._clock()
        self._prune(now)
        self._stamps.append(now)

    def used(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)

    def remaining(self) -> int:
        return max(0, self._limit - self.used())

    def wait_time(self) -> float:
        """Seconds until another request fits in the budget (0 when it fits now)."""

        now = self._clock()
        self._prune(now)
        if len(self._stamps) < self._limit:
            return 0.0
        # the oldest request that must age out to free a slot
        oldest = self._stamps[len(self._stamps) - self._limit]
        return max(0.0, oldest + self._window - now)


__all__ = ["RequestBudget"]
