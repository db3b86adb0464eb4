"""
Handles the low-level fetching of segments and whole files over HTTP.

Bodies are streamed to a `.part` sibling and only renamed into place once the
write completes, so a file under its final name is always complete.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from urllib.parse import urlsplit

import aiofiles
import aiohttp

from vodcache.utils.formatting import format_progress, format_size

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
CHUNK_SIZE = 262144  # 256 KB
DEFAULT_SEGMENT_TIMEOUT = 300


def request_headers(url: str) -> dict[str, str]:
    """Browser-like headers, with a Referer pointing at the URL's origin."""
    parts = urlsplit(url)
    return {
        "User-Agent": USER_AGENT,
        "Referer": f"{parts.scheme}://{parts.netloc}/",
        "Accept": "*/*",
    }


def _partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug(f"Could not remove partial file '{path.name}': {e}")


class SegmentFetcher:
    """
    Fetches single resources to disk. Never raises for HTTP or transport
    failures; the caller decides whether to retry based on the boolean result.
    """

    def __init__(
        self,
        segment_timeout: float = DEFAULT_SEGMENT_TIMEOUT,
        progress_interval: float = 60.0,
        verbosity: str = "normal",
        max_connections: int = 16,
    ):
        self.segment_timeout = segment_timeout
        self.progress_interval = progress_interval
        self.verbosity = verbosity
        self.max_connections = max_connections
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_connections,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15),
            )
            log.debug(f"Created fetch session with limit={self.max_connections}")
        return self._session

    async def close(self) -> None:
        """Closes the session and every connection it holds open."""
        if self._session and not self._session.closed:
            await self._session.close()
            log.debug("Fetch session closed.")
        self._session = None

    async def __aenter__(self) -> "SegmentFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def fetch(
        self,
        url: str,
        destination: Path,
        timeout: float | None = None,
        verbosity: str | None = None,
    ) -> bool:
        """
        Downloads `url` to `destination`.

        Returns:
            True once the complete body is on disk under `destination`, False on
            a non-2xx status, a transport error or a timeout.
        """
        destination = Path(destination)
        verbosity = verbosity or self.verbosity
        timeout = self.segment_timeout if timeout is None else timeout
        partial = _partial_path(destination)

        try:
            fetched = await asyncio.wait_for(
                self._download(url, destination, partial, verbosity), timeout
            )
        except asyncio.CancelledError:
            _discard(partial)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            _discard(partial)
            log.error(f"[red]Failed to fetch '{destination.name}': {e!r}[/red]")
            return False

        if not fetched:
            _discard(partial)
            return False
        await asyncio.to_thread(os.replace, partial, destination)
        return True

    async def _download(
        self, url: str, destination: Path, partial: Path, verbosity: str
    ) -> bool:
        session = await self._get_session()
        async with session.get(
            url, headers=request_headers(url), allow_redirects=True
        ) as response:
            if not 200 <= response.status < 300:
                if verbosity != "quiet":
                    log.warning(
                        f"[yellow]HTTP {response.status} for '{destination.name}'"
                        "[/yellow]"
                    )
                return False
            await self._stream_body(
                response, partial, response.content_length, verbosity
            )
        return True

    async def _stream_body(
        self,
        response: aiohttp.ClientResponse,
        partial: Path,
        total: int | None,
        verbosity: str,
    ) -> None:
        downloaded = 0
        last_report = time.monotonic()
        async with aiofiles.open(partial, "wb") as f:
            async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                await f.write(chunk)
                downloaded += len(chunk)
                now = time.monotonic()
                if (
                    verbosity == "verbose"
                    and now - last_report >= self.progress_interval
                ):
                    log.info(f"{partial.stem}: {format_progress(downloaded, total)}")
                    last_report = now
        if verbosity == "verbose":
            log.debug(f"Fetched '{partial.stem}' ({format_size(downloaded)})")

    async def fetch_text(
        self, url: str, timeout: float | None = None
    ) -> tuple[str, str]:
        """
        Fetches a small text resource such as a playlist.

        Returns:
            The final URL after redirects and the decoded body.

        Raises:
            aiohttp.ClientResponseError: on a non-2xx status.
            asyncio.TimeoutError: when `timeout` elapses.
        """
        timeout = self.segment_timeout if timeout is None else timeout
        session = await self._get_session()

        async def _get() -> tuple[str, str]:
            async with session.get(url, headers=request_headers(url)) as response:
                response.raise_for_status()
                body = await response.text(errors="replace")
                return str(response.url), body

        return await asyncio.wait_for(_get(), timeout)

    async def fetch_whole_file(
        self, url: str, destination: Path, timeout: float | None = None
    ) -> bool:
        """
        Task-level download of a complete media file (direct episodes and the
        raw merge fallback). Progress is reported at verbose level regardless of
        the fetcher's configured verbosity.
        """
        return await self.fetch(url, destination, timeout=timeout, verbosity="verbose")
