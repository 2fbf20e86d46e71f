"""
Outbound proxy provider for browser contexts and manifest fetches.

Two sources, both optional:
  1. PROXY_ENDPOINT (+ PROXY_USERNAME / PROXY_PASSWORD): one static proxy
  2. PROXY_LIST_URL: a downloadable list, one ip:port:username:password per line

Nothing configured (or PROXY_ENABLED false) means every getter returns None
and the pool launches contexts without a proxy.

Usage:
    from .proxy_manager import ProxyManager

    proxies = ProxyManager()
    await proxies.refresh()
    proxies.get_playwright_proxy()
    # -> {"server": "http://ip:port", "username": "...", "password": "..."} or None
"""

import asyncio
import logging
import os
import random
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

# Upper bound on proxies kept from a downloaded list
_MAX_PROXIES_IN_MEMORY = 1_000

PLACEHOLDER_HOST = "your-proxy-provider.com"
REFRESH_INTERVAL_SECONDS = 3600


def _env_enabled() -> bool:
    return os.getenv("PROXY_ENABLED", "false").strip().lower() in ("1", "true", "yes", "on")


class ProxyManager:
    """
    Round-robin proxy rotation over a static endpoint or a downloaded list.

    A static endpoint wins when both are configured.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        endpoint: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        list_url: Optional[str] = None,
    ) -> None:
        self.enabled = _env_enabled() if enabled is None else enabled
        self._endpoint = endpoint if endpoint is not None else os.getenv("PROXY_ENDPOINT")
        self._username = username if username is not None else os.getenv("PROXY_USERNAME")
        self._password = password if password is not None else os.getenv("PROXY_PASSWORD")
        self._list_url = list_url if list_url is not None else os.getenv("PROXY_LIST_URL")
        self._proxies: List[Dict[str, str]] = []
        self._index: int = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Internal helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _static_proxy(self) -> Optional[Dict[str, str]]:
        """Playwright proxy dict for PROXY_ENDPOINT, or None when unusable."""
        endpoint = (self._endpoint or "").strip()
        if not endpoint:
            return None
        if PLACEHOLDER_HOST in endpoint:
            logger.warning(f"[proxy] PROXY_ENDPOINT looks like a placeholder ({endpoint}), ignoring it")
            return None

        parts = urlsplit(endpoint if "://" in endpoint else f"http://{endpoint}")
        if not parts.hostname:
            logger.warning(f"[proxy] PROXY_ENDPOINT has no host: {endpoint}")
            return None
        server = f"{parts.scheme}://{parts.hostname}" + (f":{parts.port}" if parts.port else "")
        proxy = {"server": server}
        username = parts.username or self._username
        password = parts.password or self._password
        if username and password:
            proxy["username"] = username
            proxy["password"] = password
        return proxy

    def _parse_proxy_list(self, text: str) -> List[Dict[str, str]]:
        """
        Parse a proxy list download. Each line: ip:port:username:password

        Randomly samples up to _MAX_PROXIES_IN_MEMORY lines.
        """
        lines = [l.strip() for l in text.strip().splitlines() if l.strip()]
        if len(lines) > _MAX_PROXIES_IN_MEMORY:
            lines = random.sample(lines, _MAX_PROXIES_IN_MEMORY)

        proxies: List[Dict[str, str]] = []
        for line in lines:
            parts = line.split(":")
            if len(parts) >= 4 and all(parts[:4]):
                ip, port, username, password = parts[0], parts[1], parts[2], parts[3]
                proxies.append({
                    "server": f"http://{ip}:{port}",
                    "username": username,
                    "password": password,
                })
        return proxies

    # ─────────────────────────────────────────────────────────────────────────
    # Public interface
    # ─────────────────────────────────────────────────────────────────────────

    async def refresh(self, client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Reload the proxy set. Missing configuration or a failed download
        leaves the manager empty, never raises.
        """
        proxies: List[Dict[str, str]] = []

        if self.enabled:
            static = self._static_proxy()
            if static:
                proxies = [static]
                logger.info(f"[proxy] ✅ Using static proxy {static['server']}")
            elif self._list_url:
                try:
                    if client is not None:
                        resp = await client.get(self._list_url, timeout=30)
                    else:
                        async with httpx.AsyncClient(timeout=30) as http:
                            resp = await http.get(self._list_url)
                    if resp.status_code == 200:
                        proxies = self._parse_proxy_list(resp.text)
                        logger.info(f"[proxy] ✅ Loaded {len(proxies)} proxies from list")
                    else:
                        logger.warning(f"[proxy] ⚠️ Proxy list returned HTTP {resp.status_code}")
                except httpx.HTTPError as e:
                    logger.warning(f"[proxy] ⚠️ Proxy list download failed: {e}")

            if not proxies:
                logger.warning("[proxy] ⚠️ Proxies enabled but none could be loaded, running direct")
        else:
            logger.info("[proxy] ℹ️ PROXY_ENABLED is off, running without proxies")

        self._proxies = proxies
        self._index = 0

    def _next(self) -> Optional[Dict[str, str]]:
        if not self._proxies:
            return None
        proxy = self._proxies[self._index % len(self._proxies)]
        self._index = (self._index + 1) % len(self._proxies)
        return proxy

    def get_proxy_url(self) -> Optional[str]:
        """
        Next proxy as a URL for httpx: http://username:password@ip:port
        (credentials omitted when the proxy has none).
        """
        proxy = self._next()
        if proxy is None:
            return None
        scheme, _, host_port = proxy["server"].partition("://")
        if proxy.get("username") and proxy.get("password"):
            return f"{scheme}://{proxy['username']}:{proxy['password']}@{host_port}"
        return proxy["server"]

    def get_playwright_proxy(self) -> Optional[Dict[str, str]]:
        """Next proxy as a Playwright proxy dict, or None."""
        proxy = self._next()
        return dict(proxy) if proxy is not None else None

    @property
    def proxy_count(self) -> int:
        return len(self._proxies)

    async def auto_refresh_loop(self, interval: float = REFRESH_INTERVAL_SECONDS) -> None:
        """Background task: reload the list every interval seconds."""
        while True:
            await asyncio.sleep(interval)
            logger.info("[proxy] 🔄 Periodic proxy refresh...")
            await self.refresh()
