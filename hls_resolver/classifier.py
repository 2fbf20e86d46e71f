"""
Rule tables that decide whether a network observation is a manifest candidate.

Kept as data so new player quirks are a one-line change.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

MANIFEST_URL_FRAGMENTS = (
    ".m3u8",
    "/hls/",
    "/hls-",
    "manifest.m3u8",
    "playlist.m3u8",
    "index.m3u8",
    "master.m3u8",
    "/engine/hls",
    "urlset/index",
    "hls2-c",
)

PLAYLIST_CONTENT_TYPES = (
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
)

SEGMENT_EXTENSIONS = (".ts", ".m4s", ".aac", ".key", ".mp4", ".m4a", ".m4v", ".vtt", ".webvtt")

# Request headers worth replaying when the manifest is fetched later
RELEVANT_HEADER_NAMES = ("referer", "origin", "user-agent", "authorization", "range")
RELEVANT_HEADER_PREFIXES = ("accept",)


def compile_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    """Compile caller patterns; invalid ones are logged and skipped."""
    compiled: List[Pattern[str]] = []
    for pattern in patterns or ():
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"[classifier] Ignoring invalid m3u8 pattern {pattern!r}: {e}")
    return compiled


def is_playlist_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    lowered = content_type.lower()
    return any(ct in lowered for ct in PLAYLIST_CONTENT_TYPES)


def is_segment_url(url: str) -> bool:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    return path.endswith(SEGMENT_EXTENSIONS)


def is_candidate(
    url: str,
    content_type: Optional[str] = None,
    patterns: Iterable[Pattern[str]] = (),
) -> bool:
    """
    True when url (optionally with its response content type) looks like a
    playlist. Segment URLs only qualify through a playlist content type.
    """
    if is_playlist_content_type(content_type):
        return True
    if is_segment_url(url):
        return False
    lowered = url.lower()
    if any(fragment in lowered for fragment in MANIFEST_URL_FRAGMENTS):
        return True
    return any(p.search(url) for p in patterns)


def is_relevant_header(name: str) -> bool:
    lowered = name.lower()
    if lowered in RELEVANT_HEADER_NAMES:
        return True
    if lowered.startswith(RELEVANT_HEADER_PREFIXES):
        return True
    return lowered.startswith("x-") and not lowered.startswith("x-forwarded")


def relevant_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {k: v for k, v in (headers or {}).items() if is_relevant_header(k)}


def is_success_status(status: Optional[int]) -> bool:
    return status is not None and 200 <= status < 400
