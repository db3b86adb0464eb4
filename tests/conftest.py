"""
Shared fixtures and test utilities.
"""

import asyncio
from collections import Counter
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from vodcache.models.config import ServiceConfig


class MediaSite:
    """Serves a mutable path -> body mapping and records every request."""

    def __init__(self):
        self.routes: dict[str, bytes | str] = {}
        self.delays: dict[str, float] = {}
        self.hits: Counter = Counter()
        self.headers: dict[str, dict[str, str]] = {}
        self.queries: dict[str, dict[str, str]] = {}
        self.server: TestServer | None = None

    def add(self, path: str, body: bytes | str) -> str:
        self.routes[path] = body
        return self.url(path)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def handle(self, request: web.Request) -> web.StreamResponse:
        path = request.path
        self.hits[path] += 1
        self.headers[path] = dict(request.headers)
        self.queries[path] = dict(request.query)
        if path in self.delays:
            await asyncio.sleep(self.delays[path])
        if path not in self.routes:
            return web.Response(status=404, text="not found")
        body = self.routes[path]
        if isinstance(body, str):
            body = body.encode()
        return web.Response(body=body)


@pytest.fixture
async def media_site():
    site = MediaSite()
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", site.handle)
    server = TestServer(app)
    await server.start_server()
    site.server = server
    yield site
    await server.close()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def download_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir: Path, download_dir: Path) -> ServiceConfig:
    return ServiceConfig(
        data_dir=str(data_dir),
        download_path=str(download_dir),
        retries=1,
        retry_delay=0,
        segment_timeout=5,
        stop_grace_period=0.5,
        ffmpeg_path="vodcache-test-no-such-ffmpeg",
        sources={"demo": "http://127.0.0.1:1/api.php/provide/vod"},
    )


def _media_playlist(*segments: str, key: str | None = None) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10"]
    if key:
        lines.append(f'#EXT-X-KEY:METHOD=AES-128,URI="{key}"')
    for segment in segments:
        lines.append("#EXTINF:10.0,")
        lines.append(segment)
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


@pytest.fixture
def playlist():
    """Builds a media playlist body from segment URIs."""
    return _media_playlist

