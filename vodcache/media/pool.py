"""
Bounded-concurrency execution of fetch jobs with fixed-delay retry and
cooperative cancellation.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import aiohttp

from vodcache.exceptions import SegmentFetchError
from vodcache.models.stats import BatchResult

log = logging.getLogger(__name__)

FetchCallable = Callable[[str, Path], Awaitable[bool]]

RETRYABLE_ERRORS = (SegmentFetchError, OSError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class FetchJob:
    url: str
    destination: Path


class _Cancelled(Exception):
    pass


async def retry_async(
    operation: Callable[[], Awaitable[bool]],
    retries: int = 3,
    delay: float = 2.0,
    cancel_event: asyncio.Event | None = None,
    label: str = "operation",
) -> bool:
    """
    Runs `operation` until it returns True, at most `retries + 1` times, sleeping
    `delay` seconds between attempts. A raised retryable error counts as a
    failed attempt. Stops early, returning False, once `cancel_event` is set.
    """
    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            return False
        try:
            if await operation():
                return True
        except RETRYABLE_ERRORS as e:
            log.debug(f"{label} raised {e!r}")

        if attempt < attempts:
            log.warning(
                f"[yellow]{label} failed (attempt {attempt}/{attempts}), "
                f"retrying in {delay:g}s[/yellow]"
            )
            if cancel_event is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                    return False
                except asyncio.TimeoutError:
                    pass
    log.error(f"[red]✗ {label} failed after {attempts} attempts[/red]")
    return False


class BoundedPool:
    """
    Runs fetch jobs with at most `concurrency` in flight.

    Jobs whose destination already exists are skipped without a fetch, which is
    what lets an interrupted episode resume where it stopped.
    """

    def __init__(
        self,
        fetch: FetchCallable,
        concurrency: int = 5,
        retries: int = 3,
        retry_delay: float = 2.0,
        cancel_event: asyncio.Event | None = None,
        progress_interval: float = 60.0,
        label: str = "segment",
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetch = fetch
        self.concurrency = concurrency
        self.retries = retries
        self.retry_delay = retry_delay
        self.cancel_event = cancel_event or asyncio.Event()
        self.progress_interval = progress_interval
        self.label = label
        self._last_report = 0.0

    async def _run_job(
        self, job: FetchJob, semaphore: asyncio.Semaphore, result: BatchResult
    ) -> None:
        if await asyncio.to_thread(os.path.exists, job.destination):
            result.skipped += 1
            self._report_progress(result)
            return

        async with semaphore:
            if self.cancel_event.is_set():
                raise _Cancelled()
            ok = await retry_async(
                lambda: self.fetch(job.url, job.destination),
                retries=self.retries,
                delay=self.retry_delay,
                cancel_event=self.cancel_event,
                label=job.destination.name,
            )

        if ok:
            result.succeeded += 1
        elif not self.cancel_event.is_set():
            result.failed += 1
            result.failed_urls.append(job.url)
        self._report_progress(result)

    def _report_progress(self, result: BatchResult) -> None:
        """Logs `label k/N` at most once per `progress_interval`."""
        done = result.succeeded + result.skipped + result.failed
        now = time.monotonic()
        if done < result.total and now - self._last_report < self.progress_interval:
            return
        self._last_report = now
        log.info(f"{self.label} {done}/{result.total}")

    async def run(self, jobs: Iterable[FetchJob]) -> BatchResult:
        jobs = list(jobs)
        result = BatchResult(total=len(jobs))
        if not jobs:
            return result

        self._last_report = time.monotonic()
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.create_task(self._run_job(job, semaphore, result)) for job in jobs
        ]

        async def _watch_cancel() -> None:
            await self.cancel_event.wait()
            for task in tasks:
                task.cancel()

        watcher = asyncio.create_task(_watch_cancel())
        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            watcher.cancel()

        for outcome in outcomes:
            if isinstance(outcome, (asyncio.CancelledError, _Cancelled)):
                continue
            if isinstance(outcome, BaseException):
                log.error(f"[red]Fetch job crashed: {outcome!r}[/red]")
                result.failed += 1

        if self.cancel_event.is_set():
            result.cancelled = True
        log.debug(
            f"Batch done: {result.succeeded} fetched, {result.skipped} skipped, "
            f"{result.failed} failed of {result.total}"
        )
        return result
