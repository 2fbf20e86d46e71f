"""
Fetches playlist bodies outside the browser with httpx.

Two attempts per candidate: the full contextual header profile first, and the
minimal profile only when the first attempt died on an unencodable header.
Any other failure ends the candidate (returns None).
"""

import logging
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .headers import build_contextual_headers
from .models import Candidate
from .url_utils import host_matches_cookie_domain, is_valid_url, sanitize_url_for_logging

logger = logging.getLogger(__name__)

HEADER_ERRORS = (httpx.LocalProtocolError, UnicodeEncodeError)


class ManifestFetcher:
    """Thin httpx wrapper; pass a client to share connections (or to mock transport in tests)."""

    def __init__(
        self,
        user_agent: str,
        timeout_ms: int = 10_000,
        client: Optional[httpx.AsyncClient] = None,
        proxy_url: Optional[str] = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout_ms / 1000
        self._client = client
        self._proxy_url = proxy_url

    def _cookie_header(self, candidate: Candidate) -> Optional[str]:
        host = urlsplit(candidate.url).hostname or ""
        pairs = [
            f"{c.name}={c.value}"
            for c in candidate.cookies
            if host_matches_cookie_domain(host, c.domain or host)
        ]
        return "; ".join(pairs) or None

    async def fetch(self, candidate: Candidate, page_url: str, session_id: str = "") -> Optional[str]:
        """Playlist text for candidate, or None when it cannot be retrieved."""
        safe_url = sanitize_url_for_logging(candidate.url)
        if not is_valid_url(candidate.url):
            logger.warning(f"[fetch] [{session_id}] Dropping candidate with invalid URL: {safe_url}")
            return None

        cookie = self._cookie_header(candidate)
        headers = build_contextual_headers(page_url, self.user_agent, cookie=cookie, minimal=False)
        try:
            return await self._get(candidate.url, headers)
        except HEADER_ERRORS as e:
            logger.warning(
                f"[fetch] [{session_id}] Header rejected for {safe_url} ({e}); retrying with minimal profile"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[fetch] [{session_id}] Manifest fetch failed for {safe_url}: {e}")
            return None

        headers = build_contextual_headers(page_url, self.user_agent, minimal=True)
        try:
            return await self._get(candidate.url, headers)
        except (httpx.HTTPError, UnicodeEncodeError, ValueError) as e:
            logger.warning(f"[fetch] [{session_id}] Minimal-profile retry failed for {safe_url}: {e}")
            return None

    async def _get(self, url: str, headers: dict) -> str:
        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=self.timeout, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, proxy=self._proxy_url) as client:
                response = await client.get(url, headers=headers, follow_redirects=True)
        response.raise_for_status()
        return response.text
