"""
Reassembles downloaded HLS resources into a single playable file.

Strategies are tried in order: ffmpeg transcode, ffmpeg stream copy, and a raw
download of the source URL as a whole file.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from vodcache.exceptions import MergeError

from .downloader import SegmentFetcher

log = logging.getLogger(__name__)

TRANSCODE_ARGS = ("-c:v", "libx264", "-c:a", "aac")
COPY_ARGS = ("-c", "copy")


def _discard(path: Path) -> None:
    """Removes a partially written output file."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"[yellow]Could not remove partial file '{path}': {e}[/yellow]")


@dataclass
class MergeResult:
    success: bool
    path: Path
    strategy: str


class MergePipeline:
    def __init__(
        self,
        fetcher: SegmentFetcher,
        ffmpeg_path: str = "ffmpeg",
        timeout: float = 3600,
    ):
        self.fetcher = fetcher
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def ffmpeg_available(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    async def _run_ffmpeg(
        self, manifest_path: Path, output_path: Path, codec_args: tuple[str, ...]
    ) -> bool:
        args = [
            self.ffmpeg_path,
            "-y",
            "-allowed_extensions",
            "ALL",
            "-i",
            manifest_path.name,
            *codec_args,
            str(output_path.resolve()),
        ]
        log.debug(f"Running: {' '.join(args)}")
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(manifest_path.parent),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            log.warning(
                f"[yellow]ffmpeg timed out after {self.timeout:g}s, killed.[/yellow]"
            )
            _discard(output_path)
            return False
        except asyncio.CancelledError:
            await self._kill(process)
            _discard(output_path)
            raise

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-3:]
            log.debug(f"ffmpeg exited {process.returncode}: {' | '.join(tail)}")
            _discard(output_path)
            return False
        return output_path.exists()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()

    async def merge(
        self,
        manifest_path: Path,
        segment_dir: Path,
        output_path: Path,
        source_url: str,
    ) -> MergeResult:
        """
        Produces `output_path` from the localized playlist, deleting
        `segment_dir` on success.

        Raises:
            MergeError: every strategy failed; the localized playlist is kept.
        """
        manifest_path = Path(manifest_path)
        output_path = Path(output_path)

        strategies: list[tuple[str, tuple[str, ...]]] = []
        if self.ffmpeg_available():
            strategies = [("transcode", TRANSCODE_ARGS), ("copy", COPY_ARGS)]
        else:
            log.warning(
                f"[yellow]'{self.ffmpeg_path}' not found, falling back to a raw "
                "download.[/yellow]"
            )

        for name, codec_args in strategies:
            log.info(f"Merging '{output_path.name}' ({name})...")
            if await self._run_ffmpeg(manifest_path, output_path, codec_args):
                return await self._finish(name, output_path, segment_dir)
            log.warning(f"[yellow]ffmpeg {name} failed for '{output_path.name}'[/yellow]")

        log.info(f"Downloading '{output_path.name}' directly from the source URL...")
        if await self.fetcher.fetch_whole_file(
            source_url, output_path, timeout=self.timeout
        ):
            return await self._finish("raw", output_path, segment_dir)

        _discard(output_path)
        raise MergeError(
            f"Could not merge '{output_path.name}'; segments kept for playback.",
            manifest_path=manifest_path,
        )

    async def _finish(
        self, strategy: str, output_path: Path, segment_dir: Path
    ) -> MergeResult:
        await asyncio.to_thread(shutil.rmtree, segment_dir, True)
        log.info(f"[green]✓ Merged '{output_path.name}' via {strategy}[/green]")
        return MergeResult(success=True, path=output_path, strategy=strategy)
