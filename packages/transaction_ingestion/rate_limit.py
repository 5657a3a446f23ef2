"""Token-bucket rate limiter shared by pool workers.

``acquire()`` blocks until a token is available. The clock and sleep
functions are injectable so tests can drive time without waiting.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class RateLimiter:
    """Allow ``rate_per_sec`` calls per second with bursts up to ``burst``.

    Parameters
    ----------
    rate_per_sec:
        Sustained refill rate in tokens per second (> 0).
    burst:
        Bucket capacity; the bucket starts full.
    clock / sleep:
        Monotonic clock and sleep function (``time.monotonic``/``time.sleep``).
    """

    def __init__(
        self,
        rate_per_sec: float,
        *,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate_per_sec)
        self.burst = int(burst)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self) -> float:
        """Take one token, sleeping as needed; return the seconds waited."""

        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                delay = (1.0 - self._tokens) / self.rate
            # Sleep outside the lock so other workers can refill/check.
            self._sleep(delay)
            waited += delay


__all__ = ["RateLimiter"]
