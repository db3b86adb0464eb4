"""
The per-task worker process.

Started by the supervisor as `python -m vodcache.core.worker <payload-json>`, it
downloads the task's episodes one after another and reports each outcome as a
protocol message on stdout. A `terminate` line on stdin (or SIGTERM) stops it.
"""

import asyncio
import logging
import signal
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import Callable

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from vodcache.api.client import DetailClient
from vodcache.exceptions import (
    DownloadTimeoutError,
    MergeError,
    SegmentFetchError,
    VodCacheError,
)
from vodcache.media.downloader import SegmentFetcher
from vodcache.media.manifest import ManifestResolver
from vodcache.media.merger import MergePipeline
from vodcache.media.pool import BoundedPool, FetchJob
from vodcache.models.config import ServiceConfig
from vodcache.models.stats import RunStats
from vodcache.models.task import EpisodeRef, Task
from vodcache.utils.path import (
    DEFAULT_EXTENSION,
    create_dir,
    episode_basename,
    extension_from_url,
    is_manifest_url,
)

from .protocol import (
    TERMINATE_COMMAND,
    MessageType,
    MessageWriter,
    ProtocolLogHandler,
)

log = logging.getLogger(__name__)

VERBOSITY_TO_LEVEL = {
    "quiet": logging.WARNING,
    "normal": logging.INFO,
    "verbose": logging.DEBUG,
}


class WorkerState(str, Enum):
    IDLE = "idle"
    FETCHING_DETAIL = "fetching_detail"
    RESOLVING_MANIFEST = "resolving_manifest"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    DONE = "done"
    TERMINATED = "terminated"


class WorkerPayload(BaseModel):
    """Everything a worker needs, passed as a single JSON argument."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task: Task
    episodes: list[EpisodeRef] | None = None
    download_path: str
    settings: ServiceConfig

    def to_argument(self) -> str:
        return self.model_dump_json(by_alias=True)


class TaskWorker:
    """Downloads a task's episodes sequentially, reporting each outcome."""

    def __init__(
        self,
        payload: WorkerPayload,
        writer: MessageWriter,
        fetcher: SegmentFetcher | None = None,
    ):
        self.payload = payload
        self.task = payload.task
        self.settings = payload.settings
        self.output_dir = Path(payload.download_path)
        self.writer = writer
        self.fetcher = fetcher or SegmentFetcher(
            segment_timeout=self.settings.segment_timeout,
            progress_interval=self.settings.progress_interval,
            verbosity=self.settings.verbosity,
        )
        self.resolver = ManifestResolver(
            self.fetcher, timeout=self.settings.segment_timeout
        )
        self.merger = MergePipeline(
            self.fetcher,
            ffmpeg_path=self.settings.ffmpeg_path,
            timeout=self.task.download_timeout,
        )
        self.stats = RunStats()
        self.state = WorkerState.IDLE
        self.cancel_event = asyncio.Event()
        self._current: asyncio.Task | None = None

    def request_stop(self) -> None:
        """Stops after cancelling whatever fetch or merge is in flight."""
        if self.cancel_event.is_set():
            return
        log.warning(f"[yellow]Stop requested for task '{self.task.title}'[/yellow]")
        self.cancel_event.set()
        if self._current and not self._current.done():
            self._current.cancel()

    def _set_state(self, state: WorkerState) -> None:
        self.state = state
        log.debug(f"Worker state -> {state.value}")

    async def _resolve_episodes(self) -> list[EpisodeRef]:
        if self.payload.episodes is not None:
            return self.payload.episodes

        self._set_state(WorkerState.FETCHING_DETAIL)
        async with DetailClient(self.settings.sources) as client:
            detail = await client.fetch_detail(self.task.source, self.task.source_id)
        return [
            ref
            for ref in detail.episode_refs()
            if self.task.start_episode <= ref.episode_number <= self.task.total_episodes
        ]

    async def run(self) -> RunStats:
        try:
            episodes = await self._resolve_episodes()
            log.info(
                f"Task '{self.task.title}': {len(episodes)} episode(s) to download."
            )
            create_dir(self.output_dir)
            for ref in episodes:
                if self.cancel_event.is_set():
                    break
                self._current = asyncio.create_task(self.process_episode(ref))
                success = await self._current
                await self.stats.record(ref.episode_number, success)
        except asyncio.CancelledError:
            if not self.cancel_event.is_set():
                raise
        except VodCacheError as e:
            log.error(f"[red]✗ Task '{self.task.title}' aborted: {e}[/red]")
        finally:
            self._current = None
            await self.fetcher.close()

        if self.cancel_event.is_set():
            self._set_state(WorkerState.TERMINATED)
            log.warning(f"[yellow]Task '{self.task.title}' terminated.[/yellow]")
        else:
            self._set_state(WorkerState.DONE)
            log.info(
                f"Task '{self.task.title}' finished: "
                f"{self.stats.episodes_completed} done, "
                f"{self.stats.episodes_failed} failed."
            )
        return self.stats

    async def process_episode(self, ref: EpisodeRef) -> bool:
        """Downloads one episode and reports the outcome. Returns True on success."""
        base_name = episode_basename(self.task.title, ref.episode_number)
        log.info(f"Downloading episode {ref.episode_number}: {ref.url}")
        try:
            file_path = await self._download(ref, base_name)
        except (VodCacheError, aiohttp.ClientError, OSError, ValueError) as e:
            log.error(f"[red]✗ Episode {ref.episode_number} failed: {e}[/red]")
            file_path = None

        if self.cancel_event.is_set():
            return False

        if file_path is None:
            self.writer.send(
                MessageType.DOWNLOAD_ERROR,
                {"episodeNumber": ref.episode_number, "taskTitle": self.task.title},
            )
            return False

        self.writer.send(
            MessageType.DOWNLOAD_COMPLETE,
            {
                "episodeNumber": ref.episode_number,
                "filePath": str(file_path),
                "taskTitle": self.task.title,
            },
        )
        return True

    async def _download(self, ref: EpisodeRef, base_name: str) -> Path | None:
        if not is_manifest_url(ref.url):
            return await self._download_direct(ref, base_name)
        try:
            return await asyncio.wait_for(
                self._download_manifest(ref, base_name),
                timeout=self.task.download_timeout,
            )
        except asyncio.TimeoutError as e:
            raise DownloadTimeoutError(
                f"exceeded the {self.task.download_timeout}s download timeout"
            ) from e

    async def _download_manifest(self, ref: EpisodeRef, base_name: str) -> Path | None:
        output_path = self.output_dir / f"{base_name}.{DEFAULT_EXTENSION}"
        segment_dir = self.output_dir / f"{base_name}_m3u8"
        if output_path.exists() and not segment_dir.exists():
            log.info(f"'{output_path.name}' already merged, skipping.")
            return output_path

        self._set_state(WorkerState.RESOLVING_MANIFEST)
        resolution = await self.resolver.resolve(ref.url, segment_dir)

        self._set_state(WorkerState.DOWNLOADING)
        pool = BoundedPool(
            self.fetcher.fetch,
            concurrency=self.settings.segment_concurrency,
            retries=self.settings.retries,
            retry_delay=self.settings.retry_delay,
            cancel_event=self.cancel_event,
            progress_interval=self.settings.progress_interval,
            label=f"{base_name} segment",
        )
        result = await pool.run(
            FetchJob(seg.url, segment_dir / seg.filename)
            for seg in resolution.segments
        )
        if result.cancelled:
            return None
        if not result.ok:
            raise SegmentFetchError(
                f"{result.failed}/{result.total} resources failed; "
                "kept the rest for resume."
            )

        self._set_state(WorkerState.MERGING)
        try:
            merged = await self.merger.merge(
                resolution.manifest_path,
                segment_dir,
                output_path,
                source_url=resolution.source_url,
            )
            return merged.path
        except MergeError as e:
            log.warning(f"[yellow]{e} Using the local playlist instead.[/yellow]")
            return e.manifest_path

    async def _download_direct(self, ref: EpisodeRef, base_name: str) -> Path | None:
        extension = extension_from_url(ref.url) or DEFAULT_EXTENSION
        destination = self.output_dir / f"{base_name}.{extension}"

        async def _fetch(url: str, dest: Path) -> bool:
            return await self.fetcher.fetch_whole_file(
                url, dest, timeout=self.task.download_timeout
            )

        self._set_state(WorkerState.DOWNLOADING)
        pool = BoundedPool(
            _fetch,
            concurrency=self.settings.file_concurrency,
            retries=self.settings.retries,
            retry_delay=self.settings.retry_delay,
            cancel_event=self.cancel_event,
            progress_interval=self.settings.progress_interval,
            label=f"{base_name} file",
        )
        result = await pool.run([FetchJob(ref.url, destination)])
        return destination if result.ok else None


def _start_control_reader(
    loop: asyncio.AbstractEventLoop, on_terminate: Callable[[], None]
) -> threading.Thread:
    """Watches stdin for the terminate command on a daemon thread."""

    def _read() -> None:
        for line in sys.stdin:
            if line.strip() == TERMINATE_COMMAND:
                try:
                    loop.call_soon_threadsafe(on_terminate)
                except RuntimeError:
                    pass
                return

    thread = threading.Thread(target=_read, name="vodcache-control", daemon=True)
    thread.start()
    return thread


def _setup_logging(writer: MessageWriter, verbosity: str) -> None:
    handler = ProtocolLogHandler(writer)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("vodcache")
    root.handlers[:] = [handler]
    root.setLevel(VERBOSITY_TO_LEVEL.get(verbosity, logging.INFO))
    root.propagate = False


async def _run_worker(payload: WorkerPayload, writer: MessageWriter) -> int:
    worker = TaskWorker(payload, writer)
    loop = asyncio.get_running_loop()
    _start_control_reader(loop, worker.request_stop)
    try:
        loop.add_signal_handler(signal.SIGTERM, worker.request_stop)
    except (NotImplementedError, RuntimeError):
        pass

    stats = await worker.run()
    return 0 if stats.episodes_completed > 0 else 1


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    writer = MessageWriter(sys.stdout)
    if len(argv) != 1:
        writer.send(MessageType.ERROR, "usage: python -m vodcache.core.worker <json>")
        return 2

    try:
        payload = WorkerPayload.model_validate_json(argv[0])
    except ValidationError as e:
        writer.send(MessageType.ERROR, f"Invalid worker payload: {e}")
        return 2

    _setup_logging(writer, payload.settings.verbosity)
    return asyncio.run(_run_worker(payload, writer))


if __name__ == "__main__":
    sys.exit(main())
