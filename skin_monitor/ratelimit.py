"""Token bucket rate limiter, one instance per delivery channel."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class TokenBucket:
    """
    Refills ``rate`` tokens per second up to ``capacity``.

    ``acquire`` blocks the calling thread until a token is available or the
    timeout expires. Only threads of the same channel ever wait on a bucket.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait = (1.0 - self._tokens) / self.rate
            if deadline is not None:
                remaining = deadline - now
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(wait)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


__all__ = ["TokenBucket"]
