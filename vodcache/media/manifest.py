"""
Resolves HLS playlists into an ordered list of fetchable resources and writes
a localized copy that references those resources by their bare file names.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urljoin, urlsplit

import aiofiles
import aiohttp

from vodcache.exceptions import EmptyManifestError, ManifestFetchError
from vodcache.utils.path import create_dir

from .downloader import SegmentFetcher

log = logging.getLogger(__name__)

LOCAL_MANIFEST_NAME = "index.m3u8"

MEDIA_SUFFIXES = (
    ".ts",
    ".m4s",
    ".mp4",
    ".m4v",
    ".aac",
    ".m4a",
    ".mp3",
    ".vtt",
    ".webvtt",
)

_BANDWIDTH_PATTERN = re.compile(r"(?<![-A-Z])BANDWIDTH=(\d+)")
_RESOLUTION_PATTERN = re.compile(r"RESOLUTION=(\d+x\d+)")
_URI_ATTRIBUTE_PATTERN = re.compile(r'URI="([^"]+)"')
_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

STREAM_INF_TAG = "#EXT-X-STREAM-INF"
URI_BEARING_TAGS = {"#EXT-X-KEY": "key", "#EXT-X-MAP": "map"}


@dataclass(frozen=True)
class VariantStream:
    bandwidth: int
    url: str
    resolution: str | None = None


@dataclass(frozen=True)
class Segment:
    """A resource referenced by a media playlist, in playlist order."""

    url: str
    filename: str
    index: int
    kind: str = "segment"


@dataclass
class ManifestResolution:
    segments: list[Segment]
    manifest_path: Path
    source_url: str


def resolve_uri(uri: str, manifest_url: str) -> str:
    """
    Resolves a playlist URI: absolute when it carries a scheme, against the
    manifest's origin when it starts with '/', otherwise against the
    manifest's directory.
    """
    uri = uri.strip()
    if _SCHEME_PATTERN.match(uri):
        return uri
    parts = urlsplit(manifest_url)
    if uri.startswith("//"):
        return f"{parts.scheme}:{uri}"
    if uri.startswith("/"):
        return f"{parts.scheme}://{parts.netloc}{uri}"
    return urljoin(manifest_url, uri)


def local_name(url: str, fallback: str = "resource") -> str:
    """The bare file name a resource is stored under: its URL basename sans query."""
    name = PurePosixPath(urlsplit(url).path).name
    return name or fallback


def parse_variants(body: str, manifest_url: str) -> list[VariantStream]:
    """Lists the variant streams of a master playlist, in declaration order."""
    variants = []
    pending: tuple[int, str | None] | None = None
    for raw in body.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith(STREAM_INF_TAG):
            bandwidth = _BANDWIDTH_PATTERN.search(line)
            resolution = _RESOLUTION_PATTERN.search(line)
            pending = (
                int(bandwidth.group(1)) if bandwidth else 0,
                resolution.group(1) if resolution else None,
            )
        elif pending is not None and not line.startswith("#"):
            variants.append(
                VariantStream(
                    bandwidth=pending[0],
                    url=resolve_uri(line, manifest_url),
                    resolution=pending[1],
                )
            )
            pending = None
    return variants


def select_variant(variants: list[VariantStream]) -> VariantStream | None:
    """Highest bandwidth wins; on ties the first declared variant is kept."""
    if not variants:
        return None
    return max(variants, key=lambda v: v.bandwidth)


def _is_media_line(line: str) -> bool:
    path = urlsplit(line).path.lower()
    return path.endswith(MEDIA_SUFFIXES)


def localize(body: str, manifest_url: str) -> tuple[str, list[Segment]]:
    """
    Rewrites a media playlist so every resource is referenced by its bare file
    name, collecting the resources in playlist order.
    """
    segments: list[Segment] = []
    owners: dict[str, str] = {}
    out_lines = []

    def _collect(uri: str, kind: str) -> str:
        url = resolve_uri(uri, manifest_url)
        filename = local_name(url, fallback=f"{kind}_{len(segments)}")
        owner = owners.get(filename)
        if owner is None:
            owners[filename] = url
            segments.append(
                Segment(url=url, filename=filename, index=len(segments), kind=kind)
            )
        elif owner != url:
            log.warning(
                f"[yellow]{url} and {owner} share the file name '{filename}'; "
                "only the first is downloaded.[/yellow]"
            )
        return filename

    for raw in body.splitlines():
        line = raw.strip()
        tag = line.split(":", 1)[0]
        if tag in URI_BEARING_TAGS and (match := _URI_ATTRIBUTE_PATTERN.search(line)):
            filename = _collect(match.group(1), URI_BEARING_TAGS[tag])
            out_lines.append(
                line[: match.start(1)] + filename + line[match.end(1) :]
            )
        elif line and not line.startswith("#") and _is_media_line(line):
            out_lines.append(_collect(line, "segment"))
        else:
            out_lines.append(raw)

    return "\n".join(out_lines) + "\n", segments


class ManifestResolver:
    """Turns a playlist URL into local resources plus a rewritten playlist."""

    def __init__(self, fetcher: SegmentFetcher, timeout: float | None = None):
        self.fetcher = fetcher
        self.timeout = timeout

    async def _fetch(self, url: str) -> tuple[str, str]:
        try:
            return await self.fetcher.fetch_text(url, timeout=self.timeout)
        except aiohttp.ClientResponseError as e:
            raise ManifestFetchError(f"Manifest {url} answered HTTP {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ManifestFetchError(f"Manifest {url} unreachable: {e!r}") from e

    async def resolve(self, url: str, target_dir: Path) -> ManifestResolution:
        """
        Fetches the playlist, follows the best variant of a master playlist and
        writes the localized media playlist as `index.m3u8` in `target_dir`.

        Raises:
            ManifestFetchError: the playlist could not be fetched.
            EmptyManifestError: the playlist references no fetchable resources.
        """
        base_url, body = await self._fetch(url)

        variant = select_variant(parse_variants(body, base_url))
        if variant is not None:
            log.debug(
                f"Selected variant {variant.resolution or '?'} @ {variant.bandwidth} bps"
            )
            try:
                base_url, body = await self._fetch(variant.url)
            except ManifestFetchError as e:
                log.debug(f"Variant fetch failed, keeping master playlist: {e}")

        localized, segments = localize(body, base_url)
        if not segments:
            raise EmptyManifestError(f"Manifest {url} lists no media segments.")

        target_dir = Path(target_dir)
        await asyncio.to_thread(create_dir, target_dir)
        manifest_path = target_dir / LOCAL_MANIFEST_NAME
        async with aiofiles.open(manifest_path, "w", encoding="utf-8") as f:
            await f.write(localized)

        log.info(f"Resolved {len(segments)} resources from manifest.")
        return ManifestResolution(
            segments=segments, manifest_path=manifest_path, source_url=url
        )
