"""
Outgoing header profiles for manifest requests made outside the browser.

Every header goes through the same gate: name on the allowlist, name is an
RFC 7230 token, control characters stripped from the value, value encodable
as latin-1. Anything that fails is dropped and logged.
"""

import logging
import re
from typing import Dict, Optional

from .url_utils import extract_origin

logger = logging.getLogger(__name__)

HEADER_ALLOWLIST = frozenset({
    "user-agent",
    "accept",
    "accept-language",
    "referer",
    "origin",
    "cookie",
})

HLS_ACCEPT = "application/vnd.apple.mpegurl, application/x-mpegURL, */*;q=0.1"

_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9a-zA-Z]+$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def clean_header_value(value: str) -> str:
    return _CONTROL_CHARS_RE.sub("", str(value))


def is_valid_header(name: str, value: str) -> bool:
    if not _TOKEN_RE.match(name or ""):
        logger.warning(f"[headers] Dropping header with invalid name: {name!r}")
        return False
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        logger.warning(f"[headers] Dropping header {name!r}: value is not latin-1")
        return False
    return True


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Allowlisted, control-character-free, RFC 7230 valid subset of headers."""
    clean: Dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HEADER_ALLOWLIST:
            continue
        value = clean_header_value(value)
        if is_valid_header(name, value):
            clean[name] = value
    return clean


def build_contextual_headers(
    page_url: str,
    user_agent: str,
    cookie: Optional[str] = None,
    minimal: bool = False,
) -> Dict[str, str]:
    """
    Header profile for fetching a manifest discovered on page_url.

    Full profile: User-Agent, Accept, Referer, Origin, Accept-Language, Cookie.
    Minimal profile: User-Agent, Referer, Accept.
    """
    headers: Dict[str, str] = {
        "User-Agent": user_agent,
        "Accept": HLS_ACCEPT,
        "Referer": page_url,
    }
    if not minimal:
        origin = extract_origin(page_url)
        if origin:
            headers["Origin"] = origin
        headers["Accept-Language"] = "en-US,en;q=0.8"
        if cookie:
            headers["Cookie"] = cookie
    return sanitize_headers(headers)
