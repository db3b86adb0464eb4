"""
Cron evaluation for task schedules and the periodic loop that dispatches due
tasks to the supervisor.

Only the minute and hour fields of a five-field cron expression are evaluated;
the day-of-month, month and weekday fields are accepted but ignored.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from vodcache.models.task import now_ms

if TYPE_CHECKING:
    from .supervisor import TaskSupervisor

log = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 300
FALLBACK_DELAY = timedelta(hours=24)


def _parse_field(field: str, upper: int) -> list[int] | None:
    """Allowed values of one field: `*`, `N` or `*/N`. None if malformed."""
    if field == "*":
        return list(range(upper))
    if field.startswith("*/"):
        step = field[2:]
        if not step.isdigit() or int(step) == 0:
            return None
        return list(range(0, upper, int(step)))
    if field.isdigit() and int(field) < upper:
        return [int(field)]
    return None


def next_run_after(expression: str, reference: datetime) -> datetime:
    """
    The earliest time strictly after `reference` whose hour and minute match
    `expression`. Malformed expressions fall back to `reference` + 24 hours.
    """
    fields = (expression or "").split()
    minutes = _parse_field(fields[0], 60) if len(fields) == 5 else None
    hours = _parse_field(fields[1], 24) if len(fields) == 5 else None
    if minutes is None or hours is None:
        log.warning(
            f"[yellow]Invalid cron expression {expression!r}, "
            "scheduling in 24 hours.[/yellow]"
        )
        return reference + FALLBACK_DELAY

    base = reference.replace(second=0, microsecond=0)
    for day_offset in (0, 1):
        day = base + timedelta(days=day_offset)
        for hour in hours:
            for minute in minutes:
                candidate = day.replace(hour=hour, minute=minute)
                if candidate > reference:
                    return candidate
    # Unreachable for valid fields: every slot recurs within a day.
    return reference + FALLBACK_DELAY


def calculate_next_run(expression: str, current_time_ms: int | None = None) -> int:
    """Epoch-millisecond variant of `next_run_after`, in local time."""
    current_time_ms = now_ms() if current_time_ms is None else current_time_ms
    reference = datetime.fromtimestamp(current_time_ms / 1000)
    return int(next_run_after(expression, reference).timestamp() * 1000)


def is_valid_expression(expression: str) -> bool:
    fields = (expression or "").split()
    return (
        len(fields) == 5
        and _parse_field(fields[0], 60) is not None
        and _parse_field(fields[1], 24) is not None
    )


class Scheduler:
    """
    Calls `TaskSupervisor.execute_due_tasks` every `check_interval` seconds.
    A failing cycle is logged and the loop carries on.
    """

    def __init__(
        self,
        supervisor: "TaskSupervisor",
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        initial_delay: float = 5.0,
    ):
        self.supervisor = supervisor
        self.check_interval = check_interval
        self.initial_delay = initial_delay
        self._task: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name="vodcache-scheduler")
        log.info(
            f"Scheduler started, checking every {self.check_interval:g}s "
            f"(first check in {self.initial_delay:g}s)."
        )

    async def stop(self) -> None:
        self._stopped.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Scheduler stopped.")

    async def wait(self) -> None:
        """Blocks until the scheduler is stopped."""
        await self._stopped.wait()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> list[str]:
        try:
            started = await self.supervisor.execute_due_tasks()
            if started:
                log.info(f"Started {len(started)} due task(s): {', '.join(started)}")
            else:
                log.debug("No due tasks this cycle.")
            return started
        except Exception as e:
            log.error(f"[red]Scheduled check failed: {e}[/red]")
            log.debug("Scheduled check traceback", exc_info=True)
            return []

    async def _loop(self) -> None:
        await self._sleep(self.initial_delay)
        while not self._stopped.is_set():
            await self.run_once()
            await self._sleep(self.check_interval)
