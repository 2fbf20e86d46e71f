"""
Unit tests for candidate classification and header relevance.
"""

import pytest

from hls_resolver.classifier import (
    compile_patterns,
    is_candidate,
    is_playlist_content_type,
    is_relevant_header,
    is_segment_url,
    is_success_status,
    relevant_headers,
)


@pytest.mark.parametrize("url", [
    "https://cdn.example.com/live/master.m3u8",
    "https://cdn.example.com/vod/index.m3u8?token=abc",
    "https://edge.example.net/hls/stream_1/",
    "https://edge.example.net/hls-live/channel",
    "https://x.example.com/engine/hls2/01/abc/urlset/index",
    "https://x.example.com/hls2-c/abc",
])
def test_manifest_like_urls_are_candidates(url):
    assert is_candidate(url), f"{url} should be a candidate"


@pytest.mark.parametrize("url", [
    "https://cdn.example.com/hls/seg_001.ts",
    "https://cdn.example.com/hls/chunk.m4s",
    "https://cdn.example.com/hls/key.key",
    "https://cdn.example.com/hls/subs.vtt",
    "https://example.com/app.js",
    "https://example.com/video.mp4",
])
def test_segments_and_unrelated_urls_are_not_candidates(url):
    assert not is_candidate(url), f"{url} should not be a candidate"


def test_playlist_content_type_wins_over_url():
    assert is_candidate("https://api.example.com/stream?id=5", "application/vnd.apple.mpegurl")
    assert is_candidate("https://api.example.com/seg.ts", "application/x-mpegURL; charset=utf-8"), (
        "A playlist content type qualifies even a segment-looking URL"
    )
    assert not is_candidate("https://api.example.com/stream?id=5", "application/json")


def test_custom_patterns():
    patterns = compile_patterns([r"/api/source/\d+", r"[invalid"])
    assert len(patterns) == 1, "Invalid regexes are skipped"
    assert is_candidate("https://host.example.com/api/source/42", None, patterns)
    assert not is_candidate("https://host.example.com/api/source/x", None, patterns)


def test_content_type_and_segment_helpers():
    assert is_playlist_content_type("audio/mpegurl")
    assert not is_playlist_content_type(None)
    assert is_segment_url("https://a.example.com/x/y.TS")
    assert not is_segment_url("https://a.example.com/x.ts/index.m3u8")


@pytest.mark.parametrize("name,expected", [
    ("Referer", True),
    ("origin", True),
    ("User-Agent", True),
    ("authorization", True),
    ("range", True),
    ("accept-language", True),
    ("x-playback-session-id", True),
    ("x-forwarded-for", False),
    ("cookie", False),
    ("content-length", False),
])
def test_relevant_headers(name, expected):
    assert is_relevant_header(name) is expected


def test_relevant_headers_filters_dict():
    headers = {"referer": "https://a/", "cookie": "x=1", "x-token": "t", "x-forwarded-for": "1.1.1.1"}
    assert relevant_headers(headers) == {"referer": "https://a/", "x-token": "t"}


@pytest.mark.parametrize("status,expected", [(200, True), (206, True), (302, True), (399, True), (404, False), (500, False), (None, False)])
def test_success_status(status, expected):
    assert is_success_status(status) is expected
