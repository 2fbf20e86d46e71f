"""
Browser resource pool.

N long-lived Chromium processes, at most M leased pages at any moment. Each
lease is a fresh BrowserContext with its own interception pipeline, so no
state (cookies, routes, rules) crosses resolutions.

    pool = BrowserPool(settings)
    await pool.initialize()
    async with await pool.acquire_page(session_id=sid) as lease:
        await lease.page.goto(url)
    await pool.shutdown()

Admission is first come, first served: release() hands the slot directly to
the oldest waiter.
"""

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from playwright.async_api import async_playwright

from .config import MOBILE_USER_AGENT, Settings
from .errors import PoolSaturatedError, PoolShutdownError, ResolveError
from .interceptor import InterceptPipeline, create_standard_pipeline, load_filter_list

logger = logging.getLogger(__name__)

DESKTOP_VIEWPORT = {"width": 1920, "height": 1080}
MOBILE_VIEWPORT = {"width": 390, "height": 844}

Launcher = Callable[[], Awaitable[Any]]


class PageLease:
    """
    One leased page. release() is idempotent and closes the context (and so
    the tab); the pool slot is returned even if closing fails.
    """

    def __init__(
        self,
        pool: "BrowserPool",
        context: Any,
        page: Any,
        pipeline: InterceptPipeline,
        session_id: str = "",
    ) -> None:
        self._pool = pool
        self.context = context
        self.page = page
        self.pipeline = pipeline
        self.session_id = session_id
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self.context.close()
        except Exception as e:
            logger.debug(f"[pool] [{self.session_id}] Context close failed: {e}")
        finally:
            self._pool._on_release(self)

    async def __aenter__(self) -> "PageLease":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


class BrowserPool:
    """Fixed set of browsers behind a FIFO page admission queue."""

    def __init__(
        self,
        settings: Settings,
        proxy_provider: Optional[Any] = None,
        launcher: Optional[Launcher] = None,
        filter_hosts: Optional[Iterable[str]] = None,
    ) -> None:
        self.settings = settings
        self.size = max(1, settings.browser_pool_size)
        self.max_concurrent_pages = max(1, settings.max_concurrent_pages)
        self._proxy_provider = proxy_provider
        self._launcher = launcher
        self._filter_hosts = set(filter_hosts) if filter_hosts else None

        self._playwright: Optional[Any] = None
        self._browsers: List[Any] = []
        self._next = 0
        self._replace_lock = asyncio.Lock()

        self._slots = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._leases: Set[PageLease] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutting_down = False
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._initialized:
            return
        logger.info(
            f"[pool] Initializing browser pool: browsers={self.size} "
            f"max_pages={self.max_concurrent_pages} headless={self.settings.headless}"
        )
        if self._filter_hosts is None and self.settings.adblock_enabled and self.settings.adblock_filter_path:
            try:
                self._filter_hosts = load_filter_list(Path(self.settings.adblock_filter_path))
                logger.info(f"[pool] Loaded {len(self._filter_hosts)} filter-list hosts")
            except OSError as e:
                logger.warning(f"[pool] Filter list unavailable ({self.settings.adblock_filter_path}): {e}")

        if self._launcher is None:
            self._playwright = await async_playwright().start()
            self._launcher = self._launch_chromium

        for index in range(self.size):
            self._browsers.append(await self._launch(index))
        self._initialized = True
        logger.info(f"[pool] ✅ Browser pool ready with {len(self._browsers)} browsers")

    async def _launch_chromium(self) -> Any:
        return await self._playwright.chromium.launch(
            headless=self.settings.headless,
            args=list(self.settings.launch_args),
        )

    async def _launch(self, index: int) -> Any:
        browser = await self._launcher()
        try:
            browser.on("disconnected", lambda *_: logger.warning(f"[pool] Browser {index} disconnected"))
        except Exception as e:
            logger.debug(f"[pool] Could not watch browser {index}: {e}")
        return browser

    async def _browser_for_lease(self) -> Any:
        """Round-robin pick; a dead browser is relaunched in its slot first."""
        last_error: Optional[BaseException] = None
        for _ in range(len(self._browsers)):
            index = self._next % len(self._browsers)
            self._next = (self._next + 1) % len(self._browsers)
            browser = self._browsers[index]
            if browser.is_connected():
                return browser
            async with self._replace_lock:
                browser = self._browsers[index]
                if browser.is_connected():
                    return browser
                logger.warning(f"[pool] Replacing disconnected browser in slot {index}")
                try:
                    replacement = await self._launch(index)
                except Exception as e:
                    last_error = e
                    logger.error(f"[pool] Relaunch of browser {index} failed: {e}")
                    continue
                self._browsers[index] = replacement
                return replacement
        raise ResolveError(f"No browser available in pool: {last_error}")

    # ── Admission ─────────────────────────────────────────────────────────────

    async def _admit(self, timeout: Optional[float] = None) -> None:
        if self._shutting_down:
            raise PoolShutdownError("Browser pool is shutting down")
        if self._slots < self.max_concurrent_pages and not self._waiters:
            self._slots += 1
            return

        waiter = asyncio.get_event_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"[pool] Waiting for a page slot ({len(self._waiters)} queued)")
        try:
            await asyncio.wait_for(waiter, timeout)
        except BaseException as e:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # slot was handed over just before cancellation
                self._release_slot()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            if isinstance(e, asyncio.TimeoutError):
                raise PoolSaturatedError(f"Timed out after {timeout:.1f}s waiting for a browser page") from e
            raise

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._slots = max(0, self._slots - 1)

    def _on_release(self, lease: PageLease) -> None:
        self._leases.discard(lease)
        self._release_slot()
        if not self._leases:
            self._idle.set()
        logger.debug(f"[pool] [{lease.session_id}] Page released ({len(self._leases)} active)")

    def _context_options(self, mobile: bool, extra_headers: Optional[Dict[str, str]]) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "viewport": dict(MOBILE_VIEWPORT if mobile else DESKTOP_VIEWPORT),
            "user_agent": MOBILE_USER_AGENT if mobile else self.settings.user_agent,
            "service_workers": "block",
        }
        if mobile:
            options["is_mobile"] = True
            options["has_touch"] = True
            options["device_scale_factor"] = 3
        if extra_headers:
            options["extra_http_headers"] = {str(k): str(v) for k, v in extra_headers.items()}
        if self._proxy_provider is not None:
            proxy = self._proxy_provider.get_playwright_proxy()
            if proxy:
                options["proxy"] = proxy
        return options

    async def acquire_page(
        self,
        mobile: bool = False,
        extra_headers: Optional[Dict[str, str]] = None,
        session_id: str = "",
        timeout: Optional[float] = None,
    ) -> PageLease:
        """
        Wait for a slot, then open a fresh context + page with the lease's
        interception pipeline already routed.

        Raises PoolShutdownError while (or after) the pool shuts down, and
        PoolSaturatedError when no slot frees up within timeout seconds.
        """
        await self._admit(timeout)
        context = None
        try:
            if self._shutting_down:
                raise PoolShutdownError("Browser pool is shutting down")
            browser = await self._browser_for_lease()
            pipeline = create_standard_pipeline(session_id, self._filter_hosts)
            context = await browser.new_context(**self._context_options(mobile, extra_headers))
            context.set_default_navigation_timeout(self.settings.nav_timeout_ms)
            context.set_default_timeout(self.settings.default_timeout_ms)
            await context.route("**/*", pipeline.handle_route)
            page = await context.new_page()
        except BaseException:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.debug(f"[pool] [{session_id}] Context cleanup failed: {e}")
            self._release_slot()
            raise

        lease = PageLease(self, context, page, pipeline, session_id)
        self._leases.add(lease)
        self._idle.clear()
        logger.debug(f"[pool] [{session_id}] Page leased ({len(self._leases)} active)")
        return lease

    # ── Shutdown / stats ──────────────────────────────────────────────────────

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Stop admission, fail queued waiters, drain or force-close leases, close browsers."""
        if self._shutting_down:
            return
        self._shutting_down = True
        grace = self.settings.pool_shutdown_grace_seconds if grace_seconds is None else grace_seconds
        logger.info(f"[pool] Shutting down browser pool (grace {grace}s, {len(self._leases)} active)")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolShutdownError("Browser pool is shutting down"))

        if self._leases:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"[pool] Force-closing {len(self._leases)} leases after grace period")
                for lease in list(self._leases):
                    await lease.release()

        results = await asyncio.gather(
            *(self._close_browser(i, b) for i, b in enumerate(self._browsers)),
            return_exceptions=True,
        )
        for index, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(f"[pool] Error closing browser {index}: {result}")
        self._browsers = []

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.error(f"[pool] Error stopping playwright: {e}")
            self._playwright = None
        logger.info("[pool] Browser pool shutdown completed")

    async def _close_browser(self, index: int, browser: Any) -> None:
        if browser.is_connected():
            await browser.close()
            logger.debug(f"[pool] Browser {index} closed")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def active_pages(self) -> int:
        return len(self._leases)

    def stats(self) -> Dict[str, int]:
        return {
            "browser_count": len(self._browsers),
            "active_pages": len(self._leases),
            "max_concurrent_pages": self.max_concurrent_pages,
            "waiting": sum(1 for w in self._waiters if not w.done()),
        }
