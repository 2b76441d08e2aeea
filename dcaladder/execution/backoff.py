# dcaladder/execution/backoff.py
from __future__ import annotations

import random
import threading
import time
from typing import Callable, Optional


def retry_delay_seconds(
    attempts: int,
    initial: float = 10.0,
    multiplier: float = 2.0,
    cap: float = 3600.0,
    jitter_ratio: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff after `attempts` failed attempts (1-based):
        min(initial * multiplier^(attempts-1), cap), then +/- jitter_ratio.
    """
    n = max(1, int(attempts))
    delay = min(float(initial) * float(multiplier) ** (n - 1), float(cap))
    if jitter_ratio > 0:
        r = rng.uniform(-1.0, 1.0) if rng is not None else random.uniform(-1.0, 1.0)
        delay = delay * (1.0 + float(jitter_ratio) * r)
    return max(0.0, delay)


class RateLimiter:
    """
    Spaces calls to at most `per_second` per second across threads.
    per_second <= 0 disables limiting.
    """

    def __init__(
        self,
        per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = 1.0 / float(per_second) if per_second and per_second > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_at = 0.0

    def wait(self) -> None:
        if self.interval <= 0:
            return
        with self._lock:
            now = self._clock()
            wait_s = self._next_at - now
            self._next_at = max(now, self._next_at) + self.interval
        if wait_s > 0:
            self._sleep(wait_s)
