"""
Dataclasses for tracking batch and task run statistics.
"""

import asyncio
from dataclasses import dataclass, field


@dataclass
class BatchResult:
    """Outcome of one bounded-concurrency fetch batch."""

    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    failed_urls: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Every job succeeded (fetched or already on disk) and nothing was cancelled."""
        return not self.cancelled and self.failed == 0 and self.completed == self.total

    @property
    def completed(self) -> int:
        return self.succeeded + self.skipped

    @property
    def partial(self) -> bool:
        return self.completed > 0 and self.failed > 0


@dataclass
class RunStats:
    """Tracks per-run episode counters for a task worker."""

    episodes_completed: int = 0
    episodes_failed: int = 0
    completed_episodes: list[int] = field(default_factory=list)
    failed_episodes: list[int] = field(default_factory=list)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def record(self, episode_number: int, success: bool) -> None:
        async with self._lock:
            if success:
                self.episodes_completed += 1
                self.completed_episodes.append(episode_number)
            else:
                self.episodes_failed += 1
                self.failed_episodes.append(episode_number)
