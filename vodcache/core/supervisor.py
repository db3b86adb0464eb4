"""
Long-lived coordinator of task worker processes.

The supervisor decides which tasks may start, spawns one worker process per
task, consumes the worker's message stream in order and commits completed
episodes to the cache index and the task's resume pointer.
"""

import asyncio
import logging
import os
import signal
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from pydantic import ValidationError

from vodcache.api.client import DetailClient
from vodcache.exceptions import ProcessLaunchError, TaskNotFoundError, VodCacheError
from vodcache.models.config import ServiceConfig
from vodcache.models.task import CachedEpisode, ContentDetail, Task, now_ms
from vodcache.storage.cache_index import CacheIndex
from vodcache.storage.markers import RunningMarkers, pid_alive
from vodcache.storage.task_store import TaskStore
from vodcache.utils.path import relative_to_base, resolve_download_path

from .protocol import (
    TERMINATE_COMMAND,
    TYPE_TO_LEVEL,
    EpisodeOutcome,
    MessageType,
    WorkerMessage,
)
from .scheduler import calculate_next_run
from .worker import WorkerPayload

log = logging.getLogger(__name__)

WorkerCommand = Callable[[str], Sequence[str]]

CACHE_SOURCE_NAME = "Server cache"
STREAM_LIMIT = 1024 * 1024
FOREIGN_POLL_INTERVAL = 0.1


def default_worker_command(payload_argument: str) -> list[str]:
    return [sys.executable, "-m", "vodcache.core.worker", payload_argument]


@dataclass
class WorkerHandle:
    task_id: str
    title: str
    process: asyncio.subprocess.Process
    started_at: int = field(default_factory=now_ms)
    monitor: asyncio.Task | None = None
    errors: int = 0
    completed: int = 0


class TaskSupervisor:
    """
    Owns the registry of running workers and enforces the per-task mutex (the
    running marker) and the global concurrency ceiling.
    """

    def __init__(
        self,
        config: ServiceConfig,
        task_store: TaskStore | None = None,
        cache_index: CacheIndex | None = None,
        markers: RunningMarkers | None = None,
        detail_client: DetailClient | None = None,
        worker_command: WorkerCommand = default_worker_command,
    ):
        data_dir = Path(config.data_dir)
        self.config = config
        self.task_store = task_store or TaskStore(data_dir)
        self.cache_index = cache_index or CacheIndex(data_dir)
        self.markers = markers or RunningMarkers(data_dir)
        self.detail_client = detail_client or DetailClient(config.sources)
        self.worker_command = worker_command
        self._workers: dict[str, WorkerHandle] = {}
        self._starting: set[str] = set()

    @property
    def active_count(self) -> int:
        return len(self._workers) + len(self._starting)

    def running_task_ids(self) -> set[str]:
        """Tasks with a worker in this process or a live marker on disk."""
        return set(self._workers) | self._starting | self.markers.active_task_ids()

    def is_running(self, task_id: str) -> bool:
        return (
            task_id in self._workers
            or task_id in self._starting
            or self.markers.exists(task_id)
        )

    async def execute_task(self, task: Task | str) -> bool:
        """
        Starts a worker for `task` if it is allowed to run now.

        Returns:
            True if a worker process was spawned.

        Raises:
            DetailFetchError: the content detail could not be fetched.
            ProcessLaunchError: the worker process could not be started.
        """
        if isinstance(task, str):
            task = await self.task_store.get(task)

        if self.is_running(task.id):
            log.info(f"Task '{task.title}' is already running, skipping.")
            return False

        if task.is_exhausted:
            log.info(
                f"Task '{task.title}' has no episodes left "
                f"({task.start_episode} > {task.total_episodes}), disabling."
            )
            task.enabled = False
            await self.task_store.save(task)
            return False

        if self.active_count >= self.config.max_concurrent_downloads:
            log.info(
                f"[yellow]Concurrency limit ({self.config.max_concurrent_downloads}) "
                f"reached, '{task.title}' waits for the next cycle.[/yellow]"
            )
            return False

        if not self.markers.acquire(task.id):
            log.info(f"Task '{task.title}' was claimed elsewhere, skipping.")
            return False

        self._starting.add(task.id)
        try:
            return await self._launch(task)
        except BaseException:
            self.markers.release(task.id)
            raise
        finally:
            self._starting.discard(task.id)

    async def _launch(self, task: Task) -> bool:
        detail = await self.detail_client.fetch_detail(task.source, task.source_id)
        cached = await self.cache_index.episode_numbers(task.id)
        remaining = [
            ref
            for ref in detail.episode_refs()
            if task.start_episode <= ref.episode_number <= task.total_episodes
            and ref.episode_number not in cached
        ]

        if not remaining:
            task.next_run = calculate_next_run(task.cron_expression)
            await self.task_store.save(task)
            self.markers.release(task.id)
            log.info(f"Task '{task.title}' has no new episodes; next check scheduled.")
            return False

        download_path = resolve_download_path(
            self.config.download_path, task.download_path
        )
        payload = WorkerPayload(
            task=task,
            episodes=remaining,
            download_path=str(download_path),
            settings=self.config,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *self.worker_command(payload.to_argument()),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessLaunchError(
                f"Could not start worker for '{task.title}': {e}"
            ) from e

        self.markers.update_owner(task.id, process.pid)
        handle = WorkerHandle(task_id=task.id, title=task.title, process=process)
        self._workers[task.id] = handle
        handle.monitor = asyncio.create_task(
            self._monitor(handle, detail), name=f"vodcache-worker-{task.id}"
        )
        log.info(
            f"[green]Started task '{task.title}' (pid {process.pid}) for "
            f"{len(remaining)} episode(s).[/green]"
        )
        return True

    async def _monitor(self, handle: WorkerHandle, detail: ContentDetail) -> None:
        try:
            async for line in handle.process.stdout:
                message = WorkerMessage.decode(line)
                if message is None:
                    log.debug(f"[{handle.title}] unrecognised output: {line!r}")
                    continue
                await self._handle_message(handle, detail, message)
            returncode = await handle.process.wait()
            log.info(f"Task '{handle.title}' worker exited with code {returncode}.")
            if handle.errors:
                await self._reschedule_after_failures(handle)
        except Exception as e:
            log.error(f"[red]Lost track of worker for '{handle.title}': {e}[/red]")
            log.debug("Worker monitor traceback", exc_info=True)
        finally:
            self._workers.pop(handle.task_id, None)
            self.markers.release(handle.task_id, owner_pid=handle.process.pid)

    async def _handle_message(
        self, handle: WorkerHandle, detail: ContentDetail, message: WorkerMessage
    ) -> None:
        if message.type in TYPE_TO_LEVEL:
            log.log(TYPE_TO_LEVEL[message.type], f"[{handle.title}] {message.data}")
            return

        try:
            outcome = EpisodeOutcome.model_validate(message.data)
        except ValidationError:
            log.warning(f"[yellow][{handle.title}] malformed message dropped[/yellow]")
            return

        if message.type == MessageType.DOWNLOAD_ERROR:
            handle.errors += 1
            log.error(
                f"[red]✗ [{handle.title}] episode {outcome.episode_number} failed[/red]"
            )
            return

        if not outcome.file_path:
            log.warning(
                f"[yellow][{handle.title}] episode {outcome.episode_number} "
                "reported complete without a file[/yellow]"
            )
            return
        handle.completed += 1
        await self._commit_episode(handle.task_id, outcome, detail)

    async def _commit_episode(
        self, task_id: str, outcome: EpisodeOutcome, detail: ContentDetail
    ) -> None:
        try:
            task = await self.task_store.get(task_id)
        except TaskNotFoundError:
            log.warning(
                f"[yellow]Task {task_id} was deleted while running; "
                f"episode {outcome.episode_number} not recorded.[/yellow]"
            )
            return

        episode = CachedEpisode(
            task_id=task.id,
            title=task.title,
            episode_number=outcome.episode_number,
            episode_path=relative_to_base(
                self.config.download_path, outcome.file_path or ""
            ),
            poster=detail.poster or task.poster,
            source_name=CACHE_SOURCE_NAME,
            class_name=detail.class_name,
            year=detail.year,
            desc=detail.desc,
            type_name=detail.type_name,
            douban_id=detail.douban_id,
            org_source=detail.source,
            org_source_id=detail.id,
            total_episodes=len(detail.episodes),
        )
        await self.cache_index.add(episode)
        log.info(
            f"[green]✓ [{task.title}] episode {outcome.episode_number} cached at "
            f"{episode.episode_path}[/green]"
        )

        cached = await self.cache_index.episode_numbers(task.id)
        pointer = task.start_episode
        while pointer <= task.total_episodes and pointer in cached:
            pointer += 1
        if pointer != task.start_episode:
            task.advance_resume_pointer(pointer)
        if task.is_exhausted:
            task.next_run = calculate_next_run(task.cron_expression)
        await self.task_store.save(task)

    async def _reschedule_after_failures(self, handle: WorkerHandle) -> None:
        """Failed episodes wait for the task's next scheduled slot."""
        try:
            task = await self.task_store.get(handle.task_id)
        except TaskNotFoundError:
            return
        if task.is_due():
            task.next_run = calculate_next_run(task.cron_expression)
            await self.task_store.save(task)
            log.info(
                f"[{task.title}] {handle.errors} episode(s) failed; "
                "retrying at the next scheduled run."
            )

    async def execute_due_tasks(self, now: int | None = None) -> list[str]:
        """Starts every enabled task whose next run is absent or has arrived."""
        now = now_ms() if now is None else now
        due = [t for t in await self.task_store.list_tasks() if t.is_due(now)]
        return await self._execute_many(due)

    async def execute_all_enabled(self) -> list[str]:
        """Starts every enabled task regardless of its schedule."""
        enabled = [t for t in await self.task_store.list_tasks() if t.enabled]
        return await self._execute_many(enabled)

    async def _execute_many(self, tasks: list[Task]) -> list[str]:
        started = []
        for task in tasks:
            try:
                if await self.execute_task(task):
                    started.append(task.id)
            except VodCacheError as e:
                log.error(f"[red]✗ Could not start '{task.title}': {e}[/red]")
        return started

    async def stop_task(self, task_id: str) -> bool:
        """
        Stops a running task: the marker is removed, the worker is asked to
        terminate and killed if it has not exited after the grace period.
        Workers owned by another supervisor process are signalled via the pid
        recorded in their marker.
        """
        record = self.markers.read(task_id)
        self.markers.release(task_id)

        handle = self._workers.get(task_id)
        if handle is None:
            return await self._stop_foreign_worker(task_id, record)

        process = handle.process
        if process.returncode is None:
            try:
                process.stdin.write(f"{TERMINATE_COMMAND}\n".encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            try:
                await asyncio.wait_for(
                    process.wait(), timeout=self.config.stop_grace_period
                )
            except asyncio.TimeoutError:
                log.warning(
                    f"[yellow]Worker for '{handle.title}' ignored terminate, "
                    "killing it.[/yellow]"
                )
                process.kill()
                await process.wait()

        if handle.monitor:
            await handle.monitor
        log.info(f"Task '{handle.title}' stopped.")
        return True

    async def _stop_foreign_worker(self, task_id: str, record) -> bool:
        if record is None or record.pid <= 0 or record.host != socket.gethostname():
            return record is not None
        try:
            os.kill(record.pid, signal.SIGTERM)
            log.info(f"Sent SIGTERM to worker pid {record.pid} of task {task_id}.")
        except ProcessLookupError:
            log.debug(f"Worker pid {record.pid} of task {task_id} already gone.")
            return True
        except PermissionError as e:
            log.error(f"[red]Cannot signal worker pid {record.pid}: {e}[/red]")
            return True

        deadline = asyncio.get_running_loop().time() + self.config.stop_grace_period
        while pid_alive(record.pid):
            if asyncio.get_running_loop().time() >= deadline:
                log.warning(
                    f"[yellow]Worker pid {record.pid} of task {task_id} ignored "
                    "SIGTERM, killing it.[/yellow]"
                )
                try:
                    os.kill(record.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                break
            await asyncio.sleep(FOREIGN_POLL_INTERVAL)
        return True

    async def wait_for_task(self, task_id: str) -> None:
        handle = self._workers.get(task_id)
        if handle and handle.monitor:
            await handle.monitor

    async def wait_all(self) -> None:
        monitors = [h.monitor for h in self._workers.values() if h.monitor]
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stops every worker this supervisor owns."""
        if self._workers:
            log.info(f"Stopping {len(self._workers)} running task(s)...")
            await asyncio.gather(
                *(self.stop_task(task_id) for task_id in list(self._workers)),
                return_exceptions=True,
            )
        await self.detail_client.close()
