"""
Circuit breaker guarding calls to a content source API.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

from vodcache.exceptions import VodCacheError

log = logging.getLogger(__name__)


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Probing a single request


class CircuitBreakerError(VodCacheError):
    """Raised when a source's circuit is open."""


class CircuitBreaker:
    """
    Stops hammering a source API that keeps failing.

    After `failure_threshold` consecutive failures the circuit opens and every
    call fails fast for `recovery_timeout` seconds. The next call is then let
    through as a probe; `success_threshold` probe successes close it again and
    a probe failure reopens it.
    """

    def __init__(
        self,
        name: str = "source",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed = time.monotonic() - self._opened_at
        if elapsed >= self.recovery_timeout:
            log.info(
                f"[yellow]Circuit for '{self.name}' half-open after {elapsed:.0f}s, "
                "probing.[/yellow]"
            )
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0

    async def _record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    log.info(f"[green]✓ Circuit for '{self.name}' closed.[/green]")
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                log.warning(
                    f"[yellow]Probe against '{self.name}' failed, circuit reopened."
                    "[/yellow]"
                )
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ Circuit for '{self.name}' opened after "
                    f"{self._failure_count} consecutive failures.[/red]"
                )
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._failure_count = 0
        self._success_count = 0

    async def __aenter__(self):
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerError(
                    f"Source '{self.name}' is failing; retry after "
                    f"{self.recovery_timeout:.0f} seconds."
                )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type and not issubclass(exc_type, asyncio.CancelledError):
            await self._record_failure()
        elif not exc_type:
            await self._record_success()
