"""
HLS playlist parser.

Line oriented and forgiving: a malformed attribute value is dropped, it never
fails the parse. Only text that does not look like a playlist at all is
rejected (InvalidManifest).

    parsed = parse_manifest(text, "https://cdn.example.com/live/master.m3u8")
    parsed.is_live, parsed.variants[0].resolution
"""

import logging
import math
import re
from typing import Dict, List, Optional

from .errors import InvalidManifest
from .models import ParsedManifest, Resolution, StreamEncryption, StreamVariant
from .url_utils import resolve_url

logger = logging.getLogger(__name__)

PLAYLIST_HEADER = "#EXTM3U"
EXTENSION_TAG_PREFIX = "#EXT-X-"

STREAM_INF = "#EXT-X-STREAM-INF:"
ENDLIST = "#EXT-X-ENDLIST"
KEY = "#EXT-X-KEY:"
MEDIA = "#EXT-X-MEDIA:"
LOW_LATENCY_TAGS = ("#EXT-X-PART", "#EXT-X-PRELOAD-HINT")

ENCRYPTION_METHODS = ("AES-128", "SAMPLE-AES", "NONE")

# KEY=value where value is a quoted string (commas allowed) or a bare token
_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.lstrip("\ufeff").splitlines() if line.strip()]


def is_valid_m3u8(text: str) -> bool:
    """First non-empty line is #EXTM3U and some #EXT-X- tag follows."""
    if not text:
        return False
    lines = _lines(text)
    if not lines or not lines[0].startswith(PLAYLIST_HEADER):
        return False
    return any(line.startswith(EXTENSION_TAG_PREFIX) for line in lines[1:])


def is_master_playlist(text: str) -> bool:
    return STREAM_INF.rstrip(":") in text


def parse_attributes(line: str) -> Dict[str, str]:
    """Attribute list after the first ':' of a tag line, quotes removed."""
    _, _, attribute_part = line.partition(":")
    attributes: Dict[str, str] = {}
    for match in _ATTRIBUTE_RE.finditer(attribute_part):
        key, value = match.group(1), match.group(2).strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        attributes[key] = value
    return attributes


def _parse_stream_inf(line: str) -> Dict[str, object]:
    attributes = parse_attributes(line)
    variant: Dict[str, object] = {}

    bandwidth = attributes.get("BANDWIDTH")
    if bandwidth:
        try:
            variant["bandwidth"] = int(bandwidth)
        except ValueError:
            pass

    codecs = attributes.get("CODECS")
    if codecs:
        variant["codecs"] = codecs.replace('"', "")

    match = _RESOLUTION_RE.match(attributes.get("RESOLUTION", ""))
    if match:
        variant["resolution"] = Resolution(width=int(match.group(1)), height=int(match.group(2)))

    frame_rate = attributes.get("FRAME-RATE")
    if frame_rate:
        try:
            value = float(frame_rate)
        except ValueError:
            value = math.nan
        if math.isfinite(value):
            variant["frame_rate"] = value

    return variant


def _parse_encryption(line: str, base_url: str) -> Optional[StreamEncryption]:
    attributes = parse_attributes(line)
    method = attributes.get("METHOD", "").replace('"', "")
    if method not in ENCRYPTION_METHODS:
        return None
    key_uri = None
    uri = attributes.get("URI")
    if uri and method != "NONE":
        key_uri = resolve_url(uri, base_url)
    return StreamEncryption(method=method, key_uri=key_uri)


def parse_manifest(text: str, base_url: str) -> ParsedManifest:
    """
    Parse playlist text into a ParsedManifest.

    - #EXT-X-STREAM-INF opens a pending variant, consumed by the next URI line
    - #EXT-X-ENDLIST is the only VOD signal; everything else is live
    - #EXT-X-PART / #EXT-X-PRELOAD-HINT mark low latency
    - #EXT-X-KEY sets encryption when METHOD is recognised (last one wins)
    - #EXT-X-MEDIA URIs and stray .m3u8 lines are media playlists

    Raises InvalidManifest when the text is not a playlist.
    """
    if not is_valid_m3u8(text):
        raise InvalidManifest("content is not an HLS playlist")

    result = ParsedManifest()
    pending: Optional[Dict[str, object]] = None

    for line in _lines(text):
        if not line.startswith("#"):
            if pending is not None:
                result.variants.append(StreamVariant(uri=resolve_url(line, base_url), **pending))
                pending = None
            elif ".m3u8" in line:
                result.media_playlists.append(resolve_url(line, base_url))
            continue

        if line.startswith(STREAM_INF):
            pending = _parse_stream_inf(line)
        elif line.startswith(ENDLIST):
            result.is_live = False
        elif line.startswith(LOW_LATENCY_TAGS):
            result.is_low_latency = True
        elif line.startswith(KEY):
            encryption = _parse_encryption(line, base_url)
            if encryption is not None:
                result.encryption = encryption
        elif line.startswith(MEDIA):
            uri = parse_attributes(line).get("URI")
            if uri:
                result.media_playlists.append(resolve_url(uri, base_url))

    logger.debug(
        f"[m3u8] Parsed manifest: live={result.is_live} ll={result.is_low_latency} "
        f"variants={len(result.variants)} media={len(result.media_playlists)} "
        f"encrypted={result.encryption is not None}"
    )
    return result


def extract_playlist_urls(text: str, base_url: str) -> List[str]:
    """Variant URIs of a master playlist, in source order."""
    urls: List[str] = []
    lines = _lines(text)
    for index, line in enumerate(lines):
        if line.startswith(STREAM_INF) and index + 1 < len(lines):
            following = lines[index + 1]
            if not following.startswith("#"):
                urls.append(resolve_url(following, base_url))
    return urls


def get_basic_info(text: str) -> Dict[str, bool]:
    """Cheap classification without a full parse."""
    return {
        "is_valid": is_valid_m3u8(text),
        "is_master": is_master_playlist(text),
        "is_live": ENDLIST not in text,
        "has_variants": is_master_playlist(text),
    }


def to_m3u8(parsed: ParsedManifest) -> str:
    """
    Render a ParsedManifest back to playlist text.

    Only what the parser understands is written, so parsing the output with
    any base URL yields an equal structure.
    """
    lines = [PLAYLIST_HEADER, "#EXT-X-VERSION:6"]
    if parsed.is_low_latency:
        lines.append("#EXT-X-PART-INF:PART-TARGET=1.0")
    if parsed.encryption is not None:
        key = f"#EXT-X-KEY:METHOD={parsed.encryption.method}"
        if parsed.encryption.key_uri:
            key += f',URI="{parsed.encryption.key_uri}"'
        lines.append(key)
    for index, uri in enumerate(parsed.media_playlists):
        lines.append(f'#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="media",NAME="media{index}",URI="{uri}"')
    for variant in parsed.variants:
        attributes = []
        if variant.bandwidth is not None:
            attributes.append(f"BANDWIDTH={variant.bandwidth}")
        if variant.codecs is not None:
            attributes.append(f'CODECS="{variant.codecs}"')
        if variant.resolution is not None:
            attributes.append(f"RESOLUTION={variant.resolution.width}x{variant.resolution.height}")
        if variant.frame_rate is not None:
            attributes.append(f"FRAME-RATE={variant.frame_rate!r}")
        lines.append(STREAM_INF + ",".join(attributes))
        lines.append(variant.uri)
    if not parsed.is_live:
        lines.append(ENDLIST)
    return "\n".join(lines) + "\n"
