"""
Adaptive rate limiter that backs off when a content source answers 429.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)

RECOVERY_WINDOW = 300


class AdaptiveRateLimiter:
    """
    Spaces calls to one source API and halves the pace after a 429.

    The rate creeps back towards `max_calls_per_second` once no 429 has been
    seen for `RECOVERY_WINDOW` seconds.
    """

    def __init__(
        self, initial_calls_per_second: float = 4.0, max_calls_per_second: float = 8.0
    ):
        self._rate = initial_calls_per_second
        self._max_rate = max_calls_per_second
        self._last_call = 0.0
        self._last_throttle = 0.0
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    async def on_429(self) -> None:
        async with self._lock:
            self._rate = max(0.5, self._rate / 2)
            self._last_throttle = time.monotonic()
            log.warning(
                f"[yellow]Source throttled us. Slowing to {self._rate:.1f} calls/s"
                "[/yellow]"
            )

    async def acquire(self) -> None:
        """Waits until the next call is allowed under the current rate."""
        async with self._lock:
            now = time.monotonic()
            if now - self._last_throttle > RECOVERY_WINDOW:
                self._rate = min(self._max_rate, self._rate * 1.01)

            wait = self._last_call + 1.0 / self._rate - now
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()
