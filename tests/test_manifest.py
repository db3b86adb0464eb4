"""
Tests for HLS playlist resolution and localization.
"""

import logging

import pytest

from vodcache.exceptions import EmptyManifestError, ManifestFetchError
from vodcache.media.downloader import SegmentFetcher
from vodcache.media.manifest import (
    LOCAL_MANIFEST_NAME,
    ManifestResolver,
    VariantStream,
    local_name,
    localize,
    parse_variants,
    resolve_uri,
    select_variant,
)

MANIFEST_URL = "https://cdn.example.com/show/s01/e01/index.m3u8?token=abc"

MASTER = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360
low/index.m3u8
#EXT-X-STREAM-INF:AVERAGE-BANDWIDTH=900000,BANDWIDTH=2500000,RESOLUTION=1920x1080
/hd/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=1200000
https://other.example.com/mid.m3u8
"""


@pytest.fixture
async def resolver():
    fetcher = SegmentFetcher(segment_timeout=5)
    yield ManifestResolver(fetcher, timeout=5)
    await fetcher.close()


class TestResolveUri:
    def test_absolute_uri_is_kept(self):
        assert (
            resolve_uri("https://x.example.net/a/seg1.ts", MANIFEST_URL)
            == "https://x.example.net/a/seg1.ts"
        )

    def test_root_relative_uri_uses_manifest_origin(self):
        assert (
            resolve_uri("/media/seg1.ts", MANIFEST_URL)
            == "https://cdn.example.com/media/seg1.ts"
        )

    def test_relative_uri_uses_manifest_directory(self):
        assert (
            resolve_uri("seg1.ts", MANIFEST_URL)
            == "https://cdn.example.com/show/s01/e01/seg1.ts"
        )
        assert (
            resolve_uri("../e02/seg1.ts", MANIFEST_URL)
            == "https://cdn.example.com/show/s01/e02/seg1.ts"
        )

    def test_protocol_relative_uri_uses_manifest_scheme(self):
        assert (
            resolve_uri("//edge.example.org/seg1.ts", MANIFEST_URL)
            == "https://edge.example.org/seg1.ts"
        )


def test_local_name_strips_query_and_directories():
    assert local_name("https://cdn.example.com/a/b/seg_001.ts?sig=1&x=2") == "seg_001.ts"
    assert local_name("https://cdn.example.com/", fallback="key_0") == "key_0"


class TestVariants:
    def test_parses_bandwidth_resolution_and_url(self):
        variants = parse_variants(MASTER, MANIFEST_URL)
        assert variants == [
            VariantStream(
                bandwidth=800000,
                url="https://cdn.example.com/show/s01/e01/low/index.m3u8",
                resolution="640x360",
            ),
            VariantStream(
                bandwidth=2500000,
                url="https://cdn.example.com/hd/index.m3u8",
                resolution="1920x1080",
            ),
            VariantStream(
                bandwidth=1200000, url="https://other.example.com/mid.m3u8"
            ),
        ]

    def test_selects_maximum_bandwidth(self):
        selected = select_variant(parse_variants(MASTER, MANIFEST_URL))
        assert selected.bandwidth == 2500000

    def test_ties_keep_first_encountered(self):
        variants = [
            VariantStream(bandwidth=1000, url="https://a/first.m3u8"),
            VariantStream(bandwidth=1000, url="https://a/second.m3u8"),
            VariantStream(bandwidth=10, url="https://a/third.m3u8"),
        ]
        assert select_variant(variants).url == "https://a/first.m3u8"

    def test_media_playlist_has_no_variants(self, playlist):
        assert parse_variants(playlist("a.ts"), MANIFEST_URL) == []
        assert select_variant([]) is None


def test_localize_rewrites_segments_and_key_in_order(playlist):
    body = playlist(
        "seg0.ts?sig=1",
        "/abs/seg1.ts",
        "https://mirror.example.com/seg2.ts",
        key="/keys/enc.key?v=2",
    )
    localized, segments = localize(body, MANIFEST_URL)

    assert [s.url for s in segments] == [
        "https://cdn.example.com/keys/enc.key?v=2",
        "https://cdn.example.com/show/s01/e01/seg0.ts?sig=1",
        "https://cdn.example.com/abs/seg1.ts",
        "https://mirror.example.com/seg2.ts",
    ]
    assert [s.kind for s in segments] == ["key", "segment", "segment", "segment"]
    assert [s.index for s in segments] == [0, 1, 2, 3]

    lines = localized.splitlines()
    assert '#EXT-X-KEY:METHOD=AES-128,URI="enc.key"' in lines
    assert [line for line in lines if not line.startswith("#")] == [
        "seg0.ts",
        "seg1.ts",
        "seg2.ts",
    ]
    assert "#EXTINF:10.0," in lines
    assert lines[-1] == "#EXT-X-ENDLIST"


def test_localize_treats_map_like_key():
    body = '#EXTM3U\n#EXT-X-MAP:URI="init.mp4"\n#EXTINF:4,\nchunk1.m4s\n'
    localized, segments = localize(body, "https://h.example.com/v/main.m3u8")
    assert [(s.filename, s.kind) for s in segments] == [
        ("init.mp4", "map"),
        ("chunk1.m4s", "segment"),
    ]
    assert '#EXT-X-MAP:URI="init.mp4"' in localized


def test_localize_warns_when_different_urls_share_a_file_name(caplog):
    body = (
        "#EXTM3U\n#EXTINF:4,\nseg1.ts\n#EXTINF:4,\n"
        "https://ads.example.com/break/seg1.ts\n#EXTINF:4,\nseg1.ts\n"
    )
    with caplog.at_level(logging.WARNING, logger="vodcache.media.manifest"):
        localized, segments = localize(body, "https://h.example.com/v/main.m3u8")

    assert [s.url for s in segments] == ["https://h.example.com/v/seg1.ts"]
    warnings = [r.getMessage() for r in caplog.records]
    assert len(warnings) == 1
    assert "ads.example.com/break/seg1.ts" in warnings[0]
    assert "seg1.ts" in warnings[0]


def test_malformed_uri_raises_value_error():
    with pytest.raises(ValueError):
        localize("#EXTM3U\n#EXTINF:4,\nhttp://[::1/seg.ts\n", MANIFEST_URL)


async def test_resolve_follows_best_variant_and_writes_index(
    media_site, resolver, playlist, tmp_path
):
    media_site.add(
        "/vod/master.m3u8",
        "#EXTM3U\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=100000\nlow/index.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=900000\nhigh/index.m3u8\n",
    )
    media_site.add("/vod/high/index.m3u8", playlist("s1.ts", "s2.ts", key="k.key"))

    resolution = await resolver.resolve(media_site.url("/vod/master.m3u8"), tmp_path / "ep")

    assert media_site.hits["/vod/low/index.m3u8"] == 0
    assert [s.url for s in resolution.segments] == [
        media_site.url("/vod/high/k.key"),
        media_site.url("/vod/high/s1.ts"),
        media_site.url("/vod/high/s2.ts"),
    ]
    assert resolution.manifest_path == tmp_path / "ep" / LOCAL_MANIFEST_NAME
    written = resolution.manifest_path.read_text()
    assert 'URI="k.key"' in written
    assert "s1.ts\n" in written


async def test_resolve_non_2xx_raises(media_site, resolver, tmp_path):
    with pytest.raises(ManifestFetchError):
        await resolver.resolve(media_site.url("/missing.m3u8"), tmp_path)


async def test_resolve_without_segments_raises(media_site, resolver, tmp_path):
    media_site.add("/empty.m3u8", "#EXTM3U\n#EXT-X-ENDLIST\n")
    with pytest.raises(EmptyManifestError):
        await resolver.resolve(media_site.url("/empty.m3u8"), tmp_path / "out")
    assert not (tmp_path / "out" / LOCAL_MANIFEST_NAME).exists()


async def test_failed_variant_fetch_falls_back_to_original_body(
    media_site, resolver, tmp_path
):
    media_site.add(
        "/master.m3u8", "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=1\ngone.m3u8\n"
    )
    with pytest.raises(EmptyManifestError):
        await resolver.resolve(media_site.url("/master.m3u8"), tmp_path)
    assert media_site.hits["/gone.m3u8"] == 1
