"""FIFO rate limiter that delays callers to a smooth requests-per-second cap."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueingRateLimiter:
    """Admit at most ``rate`` calls per rolling ``interval`` seconds, in FIFO order.

    Callers are queued by arrival. Only the head of the queue may be admitted;
    when the window is full the head sleeps the minimum time needed for the
    oldest admission to leave the window while the rest wait on a condition
    variable. The limiter never rejects, it only delays.

    The instance is meant to be shared by every sync run in the process.
    """

    def __init__(
        self,
        rate: int = 4,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._rate = int(rate)
        self._interval = float(interval)
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._condition = threading.Condition()
        self._tickets = itertools.count()
        self._waiting: deque[int] = deque()
        self._admitted: deque[float] = deque()

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def interval(self) -> float:
        return self._interval

    def pending(self) -> int:
        """Return the number of callers currently queued."""

        with self._condition:
            return len(self._waiting)

    def acquire(self) -> None:
        """Block until the caller may issue one request."""

        with self._condition:
            ticket = next(self._tickets)
            self._waiting.append(ticket)
            while self._waiting[0] != ticket:
                self._condition.wait()

        try:
            while True:
                with self._condition:
                    now = self._clock()
                    self._evict(now)
                    if len(self._admitted) < self._rate:
                        self._admitted.append(now)
                        return
                    delay = self._admitted[0] + self._interval - now
                if delay > 0:
                    logger.debug("Rate limit reached; delaying next request by %.3fs", delay)
                    self._sleep(delay)
        finally:
            with self._condition:
                self._waiting.popleft()
                self._condition.notify_all()

    def submit(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run ``func`` once admitted and return its result."""

        self.acquire()
        return func(*args, **kwargs)

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self._interval:
            self._admitted.popleft()


__all__ = ["QueueingRateLimiter"]
