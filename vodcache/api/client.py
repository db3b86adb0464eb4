"""
Async client for Apple-CMS style content source APIs, guarded by a circuit
breaker and an adaptive rate limiter.
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional

import aiohttp

from vodcache.exceptions import DetailFetchError
from vodcache.models.task import ContentDetail
from vodcache.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

from .rate_limiter import AdaptiveRateLimiter

log = logging.getLogger(__name__)

_CONTENT_ID_PATTERN = re.compile(r"^[\w-]+$")
_YEAR_PATTERN = re.compile(r"\d{4}")
_TAG_PATTERN = re.compile(r"<[^>]+>")

GROUP_SEPARATOR = "$$$"
EPISODE_SEPARATOR = "#"


def parse_play_url(play_url: str) -> List[str]:
    """
    Extracts episode URLs from a `vod_play_url` field.

    The field holds one or more player groups separated by `$$$`; each group is
    a `#`-separated list of `name$url` entries. The group with the most m3u8
    links wins, falling back to the first non-empty group.
    """
    groups: List[List[str]] = []
    for raw_group in play_url.split(GROUP_SEPARATOR):
        urls = []
        for entry in raw_group.split(EPISODE_SEPARATOR):
            entry = entry.strip()
            if not entry:
                continue
            url = entry.split("$")[-1].strip()
            if url.startswith(("http://", "https://")):
                urls.append(url)
        if urls:
            groups.append(urls)

    if not groups:
        return []

    best = max(groups, key=lambda urls: sum(".m3u8" in u for u in urls))
    if not any(".m3u8" in u for u in best):
        return groups[0]
    return best


def parse_detail(item: Dict[str, Any], source: str, source_name: str) -> ContentDetail:
    """Maps one `list` entry of a videolist response onto a ContentDetail."""
    episodes = parse_play_url(item.get("vod_play_url") or "")
    year_match = _YEAR_PATTERN.search(str(item.get("vod_year") or ""))
    description = item.get("vod_content")
    if description:
        description = _TAG_PATTERN.sub("", description).strip()

    douban_id = item.get("vod_douban_id")
    try:
        douban_id = int(douban_id) if douban_id else None
    except (TypeError, ValueError):
        douban_id = None

    return ContentDetail(
        id=str(item.get("vod_id", "")),
        title=(item.get("vod_name") or "").strip(),
        poster=item.get("vod_pic") or "",
        episodes=episodes,
        episode_numbers=list(range(1, len(episodes) + 1)),
        source=source,
        source_name=source_name,
        year=year_match.group(0) if year_match else "unknown",
        desc=description or None,
        type_name=item.get("type_name"),
        class_name=item.get("vod_class"),
        douban_id=douban_id,
    )


class DetailClient:
    """
    Fetches content detail (title, poster, episode URLs) from configured sources.

    Each source key maps to an API endpoint; a source that keeps failing trips
    its own circuit breaker without affecting the others.
    """

    def __init__(self, sources: Dict[str, str], timeout: float = 30):
        self.sources = dict(sources)
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = AdaptiveRateLimiter()
        self._breakers: Dict[str, CircuitBreaker] = {}

    async def _initialize_session(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=8, ttl_dns_cache=300),
                headers={
                    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
                    "Accept": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout, connect=10),
            )

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "DetailClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _breaker_for(self, source: str) -> CircuitBreaker:
        if source not in self._breakers:
            self._breakers[source] = CircuitBreaker(
                name=source, failure_threshold=3, recovery_timeout=120
            )
        return self._breakers[source]

    async def _get_json(self, source: str, url: str, **params: Any) -> Dict[str, Any]:
        await self._initialize_session()
        async with self._breaker_for(source):
            await self._rate_limiter.acquire()
            start = time.monotonic()
            async with self._session.get(url, params=params) as response:
                log.debug(
                    f"GET {response.url} -> {response.status} "
                    f"in {(time.monotonic() - start) * 1000:.0f}ms"
                )
                if response.status == 429:
                    await self._rate_limiter.on_429()
                response.raise_for_status()
                return await response.json(content_type=None)

    async def fetch_detail(self, source: str, content_id: str) -> ContentDetail:
        """
        Retrieves the detail of one content item.

        Raises:
            DetailFetchError: on an unknown source, a malformed id, a transport
                failure or a response without the requested item.
        """
        if not _CONTENT_ID_PATTERN.match(content_id or ""):
            raise DetailFetchError(f"Invalid content id: {content_id!r}")
        api_url = self.sources.get(source)
        if not api_url:
            raise DetailFetchError(f"Unknown content source: '{source}'")

        try:
            payload = await self._get_json(
                source, api_url, ac="videolist", ids=content_id
            )
        except CircuitBreakerError as e:
            raise DetailFetchError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DetailFetchError(
                f"Failed to fetch detail {source}/{content_id}: {e}"
            ) from e

        items = payload.get("list") or []
        if not items:
            raise DetailFetchError(f"Source '{source}' has no item '{content_id}'.")

        detail = parse_detail(items[0], source=source, source_name=source)
        if not detail.episodes:
            log.warning(
                f"[yellow]Item {source}/{content_id} lists no playable episodes."
                "[/yellow]"
            )
        return detail
