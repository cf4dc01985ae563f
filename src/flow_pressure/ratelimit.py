from __future__ import annotations

import threading
import time
from collections.abc import Callable


class RateLimiter:
    """Blocks callers so that consecutive calls are at least ``min_interval`` apart."""

    def __init__(
        self,
        min_interval: float,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._sleep = sleep
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._last_call: float | None = None

    def wait(self) -> float:
        with self._lock:
            now = self._monotonic()
            delay = 0.0
            if self._last_call is not None:
                delay = self.min_interval - (now - self._last_call)
            if delay > 0:
                self._sleep(delay)
                now += delay
            self._last_call = now
            return max(0.0, delay)
