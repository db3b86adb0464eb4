"""
Tests for play-url parsing and the content detail client.
"""

import json

import pytest

from vodcache.api.client import DetailClient, parse_detail, parse_play_url
from vodcache.api.rate_limiter import AdaptiveRateLimiter
from vodcache.exceptions import DetailFetchError
from vodcache.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
)

API_PATH = "/api.php/provide/vod"

ITEM = {
    "vod_id": 42,
    "vod_name": " Show ",
    "vod_pic": "https://img.example.com/42.jpg",
    "vod_year": "2024年",
    "vod_content": "<p>A <b>great</b> show.</p>",
    "type_name": "Drama",
    "vod_class": "Drama,Mystery",
    "vod_douban_id": "1234567",
    "vod_play_url": (
        "第01集$https://a.example.com/1.mp4#第02集$https://a.example.com/2.mp4"
        "$$$"
        "第01集$https://b.example.com/1/index.m3u8#第02集$https://b.example.com/2/index.m3u8"
    ),
}


class TestParsePlayUrl:
    def test_prefers_group_with_most_playlists(self):
        assert parse_play_url(ITEM["vod_play_url"]) == [
            "https://b.example.com/1/index.m3u8",
            "https://b.example.com/2/index.m3u8",
        ]

    def test_falls_back_to_first_group_without_playlists(self):
        play_url = "EP1$https://a.example.com/1.mp4$$$EP1$https://b.example.com/1.flv"
        assert parse_play_url(play_url) == ["https://a.example.com/1.mp4"]

    def test_bare_urls_and_junk_entries(self):
        play_url = "https://a.example.com/1.m3u8##not a url#EP3$ftp://x/3.m3u8"
        assert parse_play_url(play_url) == ["https://a.example.com/1.m3u8"]

    def test_empty(self):
        assert parse_play_url("") == []


def test_parse_detail_maps_fields():
    detail = parse_detail(ITEM, source="demo", source_name="Demo")

    assert detail.id == "42"
    assert detail.title == "Show"
    assert detail.year == "2024"
    assert detail.desc == "A great show."
    assert detail.class_name == "Drama,Mystery"
    assert detail.douban_id == 1234567
    assert [r.episode_number for r in detail.episode_refs()] == [1, 2]


def test_parse_detail_tolerates_missing_fields():
    detail = parse_detail({"vod_id": "7", "vod_douban_id": "n/a"}, "demo", "demo")
    assert detail.year == "unknown"
    assert detail.episodes == []
    assert detail.douban_id is None
    assert detail.desc is None


@pytest.fixture
async def client(media_site):
    client = DetailClient({"demo": media_site.url(API_PATH)}, timeout=5)
    yield client
    await client.close()


async def test_fetch_detail_queries_videolist(media_site, client):
    media_site.add(API_PATH, json.dumps({"code": 1, "list": [ITEM]}))

    detail = await client.fetch_detail("demo", "42")

    assert detail.source == "demo"
    assert len(detail.episodes) == 2
    assert media_site.queries[API_PATH] == {"ac": "videolist", "ids": "42"}


async def test_fetch_detail_rejects_bad_ids_and_sources(media_site, client):
    with pytest.raises(DetailFetchError):
        await client.fetch_detail("demo", "42&ac=list")
    with pytest.raises(DetailFetchError):
        await client.fetch_detail("other", "42")
    assert media_site.hits[API_PATH] == 0


async def test_fetch_detail_missing_item(media_site, client):
    media_site.add(API_PATH, json.dumps({"code": 1, "list": []}))
    with pytest.raises(DetailFetchError, match="no item"):
        await client.fetch_detail("demo", "42")


async def test_repeated_failures_open_the_circuit(media_site, client):
    for _ in range(3):
        with pytest.raises(DetailFetchError):
            await client.fetch_detail("demo", "42")
    assert media_site.hits[API_PATH] == 3

    with pytest.raises(DetailFetchError, match="failing"):
        await client.fetch_detail("demo", "42")
    assert media_site.hits[API_PATH] == 3


async def test_circuit_half_opens_after_recovery_timeout():
    breaker = CircuitBreaker("demo", failure_threshold=1, recovery_timeout=0)

    with pytest.raises(RuntimeError):
        async with breaker:
            raise RuntimeError("down")
    assert breaker.state is CircuitState.OPEN

    async with breaker:
        pass
    assert breaker.state is CircuitState.CLOSED


async def test_open_circuit_fails_fast():
    breaker = CircuitBreaker("demo", failure_threshold=1, recovery_timeout=60)
    with pytest.raises(RuntimeError):
        async with breaker:
            raise RuntimeError("down")

    with pytest.raises(CircuitBreakerError):
        async with breaker:
            pass


async def test_rate_limiter_halves_on_throttle():
    limiter = AdaptiveRateLimiter(initial_calls_per_second=4)
    await limiter.on_429()
    assert limiter.rate == 2
    for _ in range(5):
        await limiter.on_429()
    assert limiter.rate == 0.5
