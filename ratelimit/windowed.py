"""Hard request budget over a rolling window, denying instead of queueing."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimitExceededError(RuntimeError):
    """Raised when a windowed budget has no remaining requests."""

    def __init__(self, remaining: int, minutes_until_reset: int, *, limit: int | None = None):
        self.remaining = remaining
        self.minutes_until_reset = minutes_until_reset
        self.limit = limit
        super().__init__(
            f"rate limit exceeded; try again in {minutes_until_reset} minute(s)"
        )

    def to_dict(self) -> dict[str, int | None]:
        return {
            "remaining": self.remaining,
            "minutesUntilReset": self.minutes_until_reset,
            "limit": self.limit,
        }


class WindowedBudgetLimiter:
    """Sliding log of admissions over ``window_seconds`` capped at ``max_requests``.

    ``try_acquire`` never blocks; it records an admission and returns ``True``
    or returns ``False`` when the budget is spent. The check and the record
    happen under one lock so concurrent callers cannot overspend.
    """

    def __init__(
        self,
        max_requests: int = 100,
        *,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_requests = int(max_requests)
        self._window = float(window_seconds)
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._log: deque[float] = deque()

    @property
    def limit(self) -> int:
        return self._max_requests

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._log) >= self._max_requests:
                return False
            self._log.append(now)
            return True

    def acquire_or_raise(self) -> None:
        """Record one admission or raise :class:`RateLimitExceededError`."""

        if self.try_acquire():
            return
        remaining = self.remaining()
        minutes = self.minutes_until_reset()
        logger.warning(
            "Request budget of %s per %ss exhausted; resets in %s minute(s)",
            self._max_requests,
            int(self._window),
            minutes,
        )
        raise RateLimitExceededError(remaining, minutes, limit=self._max_requests)

    def remaining(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return self._max_requests - len(self._log)

    def reset_at(self) -> float | None:
        """Return when the oldest admission leaves the window, or ``None``."""

        with self._lock:
            self._evict(self._clock())
            if not self._log:
                return None
            return self._log[0] + self._window

    def minutes_until_reset(self) -> int:
        reset = self.reset_at()
        if reset is None:
            return 0
        return max(0, math.ceil((reset - self._clock()) / 60))

    def _evict(self, now: float) -> None:
        while self._log and now - self._log[0] >= self._window:
            self._log.popleft()


__all__ = ["RateLimitExceededError", "WindowedBudgetLimiter"]
