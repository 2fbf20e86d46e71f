"""
URL helpers: validation, allowlist, domain keys and log-safe rendering.
"""

import logging
from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

# Query parameters worth keeping when normalising a manifest URL
_RELEVANT_PARAMS = ("token", "auth", "key", "signature", "expires", "timestamp")

_SENSITIVE_PARAMS = (
    "token", "auth", "key", "password", "secret", "signature", "api_key", "apikey",
)


def is_valid_url(url: str) -> bool:
    """Absolute http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def extract_domain(url: str) -> str:
    """Lower-case hostname without a leading www.; used as the strategy cache key."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def extract_origin(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return ""
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def is_domain_allowed(url: str, allowed_hosts: Iterable[str]) -> bool:
    """
    Exact host match or "*.example.com" wildcard (which also matches the bare
    domain). An empty allowlist allows everything.
    """
    allowed = [h.strip().lower() for h in allowed_hosts if h and h.strip()]
    if not allowed:
        return True
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    for entry in allowed:
        if entry.startswith("*."):
            base = entry[2:]
            if host == base or host.endswith("." + base):
                return True
        elif host == entry:
            return True
    return False


def resolve_url(url: str, base_url: str) -> str:
    """Absolute form of url relative to base_url; url is returned as-is on failure."""
    if url.startswith(("http://", "https://")):
        return url
    try:
        return urljoin(base_url, url)
    except ValueError as e:
        logger.warning(f"[url] Failed to resolve {url!r} against {base_url!r}: {e}")
        return url


def normalize_url(url: str) -> str:
    """Drop the fragment and every query parameter that is not auth-related."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    kept = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if any(p in k.lower() for p in _RELEVANT_PARAMS)
    ]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), ""))


def sanitize_url_for_logging(url: str) -> str:
    """Mask the values of token/key/signature style query parameters."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    masked = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if value and any(p in key.lower() for p in _SENSITIVE_PARAMS):
            value = "***MASKED***"
        masked.append((key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(masked), parts.fragment))


def is_hls_url(url: str) -> bool:
    try:
        return ".m3u8" in urlsplit(url).path.lower()
    except ValueError:
        return False


def host_matches_cookie_domain(host: str, cookie_domain: str) -> bool:
    """Suffix match of a request host against a cookie domain (".example.com" style allowed)."""
    host = (host or "").lower()
    domain = (cookie_domain or "").lower().lstrip(".")
    if not domain:
        return True
    return host == domain or host.endswith("." + domain)
