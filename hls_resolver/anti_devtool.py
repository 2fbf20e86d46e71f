"""
Resolution path for pages that fight back against inspection.

Some players load a "disable devtool" script that reloads, redirects or blanks
the page as soon as it suspects automation. For those domains the resolver
skips the pool and uses:

  - AntiDevtoolDetector: decides whether a URL needs this path (known domain
    list, or an httpx + BeautifulSoup scan of the page HTML)
  - AntiDevtoolBrowserPage: a dedicated browser with the neutralising init
    script and the anti-devtool interception pipeline
  - AggressiveDetector: records every request/response, classifies afterwards
  - extract_dom_sources(): reads <video>/<source> URLs straight from the DOM

AntiDevtoolResolver ties them together and hands back plain candidates, so the
caller processes them exactly like the standard path's.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup
from playwright.async_api import async_playwright

from .activation import Deadline, WAIT_UNTIL_VALUES
from .classifier import compile_patterns, is_candidate
from .config import Settings
from .detector import PassiveDetector
from .errors import NavigationTimeoutError, classify_navigation_error
from .interceptor import create_anti_devtool_pipeline
from .models import ActivationStrategy, Candidate, CandidateOrigin, Cookie, StrategyName
from .url_utils import sanitize_url_for_logging

logger = logging.getLogger(__name__)

BLOCKER_SIGNATURES = (
    "disable-devtool",
    "console-ban",
    "devtools-detector",
    "anti-devtools",
    "devtool-detect",
    "devtools-detect",
)

CONCEALMENT_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
    "--disable-extensions",
    "--disable-default-apps",
    "--disable-sync",
    "--disable-features=MediaRouter",
    "--window-size=1920,1080",
]

HTML_PREFETCH_TIMEOUT = 5.0
PLAYER_SELECTORS = ["#player", "video", ".player", "[id*='player']", "[class*='player']"]

SEGMENT_CONTEXT_HINTS = ("hls", "stream", "segment", "chunk", "video", "seg-")

# Loaded before any page script
BYPASS_SCRIPT = """
(() => {
  'use strict';

  // Stand-in for the blocker library; a late-loading copy finds it already "running"
  window.DisableDevtool = {
    isRunning: false,
    isSuspend: true,
    md5: () => '',
    version: '0.0.0',
    DetectorType: {},
    isDevToolOpened: () => false,
    setDetectDelay: () => {},
    ondetect: () => {},
    md5Script: () => '',
    clearLog: () => {},
  };

  Object.defineProperty(navigator, 'webdriver', { get: () => false, configurable: true });
  try { delete Object.getPrototypeOf(navigator).webdriver; } catch (e) {}

  // outer != inner is the classic docked-devtools signal
  Object.defineProperty(window, 'outerWidth', { get: () => window.innerWidth, configurable: true });
  Object.defineProperty(window, 'outerHeight', { get: () => window.innerHeight, configurable: true });

  const hasDebugger = (cb) =>
    (typeof cb === 'string' && cb.includes('debugger')) ||
    (typeof cb === 'function' && Function.prototype.toString.call(cb).includes('debugger'));
  const nativeSetInterval = window.setInterval;
  const nativeSetTimeout = window.setTimeout;
  window.setInterval = function (cb, delay, ...args) {
    if (hasDebugger(cb)) return -1;
    return nativeSetInterval.apply(this, [cb, delay, ...args]);
  };
  window.setTimeout = function (cb, delay, ...args) {
    if (hasDebugger(cb)) return -1;
    return nativeSetTimeout.apply(this, [cb, delay, ...args]);
  };

  const nativeAddEventListener = window.addEventListener;
  window.addEventListener = function (type, listener, options) {
    if (type === 'resize') return;
    return nativeAddEventListener.apply(this, [type, listener, options]);
  };
  window.onresize = null;

  try { window.location.reload = () => false; } catch (e) {}
  try {
    const href = window.location.href;
    Object.defineProperty(window.location, 'href', {
      get: () => href,
      set: (value) => { if (value === href) return; },
      configurable: true,
    });
  } catch (e) {}

  window.alert = () => {};
  window.confirm = () => true;
  window.prompt = () => null;
  window.open = () => null;

  const nativeToString = Function.prototype.toString;
  Function.prototype.toString = function () {
    if (this === window.setInterval || this === window.setTimeout) {
      return 'function () { [native code] }';
    }
    return nativeToString.call(this);
  };
})();
"""

_DOM_SOURCES_JS = """
() => {
  const out = [];
  const push = (src) => {
    if (src && (src.includes('.m3u8') || src.toLowerCase().includes('hls'))) out.push(src);
  };
  document.querySelectorAll('video').forEach((v) => { push(v.currentSrc); push(v.src); });
  document.querySelectorAll('source').forEach((s) => push(s.src));
  return out;
}
"""

_LARGEST_PLAYER_JS = """
(selectors) => {
  let best = null;
  for (const selector of selectors) {
    let nodes = [];
    try { nodes = document.querySelectorAll(selector); } catch (e) { continue; }
    for (const el of nodes) {
      const r = el.getBoundingClientRect();
      if (r.width < 4 || r.height < 4) continue;
      const area = r.width * r.height;
      if (!best || area > best.area) {
        best = {x: r.left + r.width / 2, y: r.top + r.height / 2, area, selector};
      }
    }
  }
  return best;
}
"""


# ── Detection ─────────────────────────────────────────────────────────────────

@dataclass
class AntiDevtoolDetection:
    detected: bool
    confidence: str = "high"
    patterns: List[str] = field(default_factory=list)
    method: str = "none"


def find_blocker_signatures(html: str) -> List[str]:
    """Blocker signatures in script src attributes and inline script bodies."""
    soup = BeautifulSoup(html or "", "html.parser")
    haystack: List[str] = []
    for script in soup.find_all("script"):
        src = script.get("src")
        if src:
            haystack.append(src.lower())
        if script.string:
            haystack.append(script.string.lower())
    text = "\n".join(haystack)
    return [signature for signature in BLOCKER_SIGNATURES if signature in text]


class AntiDevtoolDetector:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client

    def known_domain(self, url: str) -> Optional[str]:
        host = (urlsplit(url).hostname or "").lower()
        for domain in self.settings.anti_devtool_domains:
            domain = domain.lower().lstrip(".")
            if domain and (host == domain or host.endswith("." + domain)):
                return domain
        return None

    async def detect(self, url: str) -> AntiDevtoolDetection:
        domain = self.known_domain(url)
        if domain:
            return AntiDevtoolDetection(True, "high", [domain], "known-domain")
        if not self.settings.anti_devtool_auto_detect:
            return AntiDevtoolDetection(False)

        try:
            html = await self._prefetch(url)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"[anti-devtool] HTML pre-fetch failed for {sanitize_url_for_logging(url)}: {e}")
            return AntiDevtoolDetection(False, "medium")

        patterns = find_blocker_signatures(html)
        if not patterns:
            return AntiDevtoolDetection(False, "medium")
        logger.info(f"[anti-devtool] 🔍 Blocker signatures on {sanitize_url_for_logging(url)}: {patterns}")
        return AntiDevtoolDetection(True, "high" if len(patterns) > 1 else "medium", patterns, "html-analysis")

    async def _prefetch(self, url: str) -> str:
        headers = {"User-Agent": self.settings.user_agent, "Accept": "text/html"}
        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=HTML_PREFETCH_TIMEOUT, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=HTML_PREFETCH_TIMEOUT, follow_redirects=True) as client:
                response = await client.get(url, headers=headers)
        if response.status_code >= 500:
            raise ValueError(f"HTTP {response.status_code}")
        return response.text


# ── Capture ───────────────────────────────────────────────────────────────────

@dataclass
class Capture:
    url: str
    kind: str
    resource_type: Optional[str] = None
    status: Optional[int] = None
    content_type: Optional[str] = None
    at: float = field(default_factory=time.time)


@dataclass
class AggressiveResults:
    playlists: List[str]
    master: Optional[str]
    index_playlists: List[str]
    other_playlists: List[str]
    segments_sample: List[str]
    total_segments: int

    @property
    def success(self) -> bool:
        return bool(self.playlists)


def _is_hls_related(url: str) -> bool:
    lowered = url.lower()
    if ".m3u8" in lowered:
        return True
    if ".ts" in lowered and any(hint in lowered for hint in SEGMENT_CONTEXT_HINTS + ("/hls2/",)):
        return True
    return any(hint in lowered for hint in ("/hls/", "/hls-", "manifest", "playlist"))


class AggressiveDetector:
    """
    Keeps every request and every HLS-looking response; no early filtering.
    Playlists are picked afterwards with the same rules as the passive path.
    """

    def __init__(self, session_id: str = "", patterns: Iterable[str] = (), debug: bool = False) -> None:
        self.session_id = session_id
        self.debug = debug
        self.captures: List[Capture] = []
        self._patterns = compile_patterns(patterns)
        self._page: Optional[Any] = None

    def on_request(self, request: Any) -> None:
        try:
            self.captures.append(Capture(request.url, "request", resource_type=request.resource_type))
            if _is_hls_related(request.url):
                logger.info(f"[anti-devtool] [{self.session_id}] ⭐ HLS request {sanitize_url_for_logging(request.url)[:120]}")
            elif self.debug:
                logger.info(f"[anti-devtool] [{self.session_id}] request {sanitize_url_for_logging(request.url)[:120]}")
        except Exception as e:
            logger.debug(f"[anti-devtool] [{self.session_id}] Request capture error: {e}")

    def on_response(self, response: Any) -> None:
        try:
            content_type = (response.headers or {}).get("content-type")
            if not (_is_hls_related(response.url) or is_candidate(response.url, content_type, self._patterns)):
                return
            self.captures.append(Capture(response.url, "response", status=response.status, content_type=content_type))
        except Exception as e:
            logger.debug(f"[anti-devtool] [{self.session_id}] Response capture error: {e}")

    def attach(self, page: Any) -> None:
        self._page = page
        page.on("request", self.on_request)
        page.on("response", self.on_response)

    def detach(self) -> None:
        if self._page is None:
            return
        for event, handler in (("request", self.on_request), ("response", self.on_response)):
            try:
                self._page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"[anti-devtool] [{self.session_id}] remove_listener({event}) failed: {e}")
        self._page = None

    def content_type_for(self, url: str) -> Optional[str]:
        for capture in self.captures:
            if capture.url == url and capture.content_type:
                return capture.content_type
        return None

    def results(self) -> AggressiveResults:
        urls = list(dict.fromkeys(c.url for c in self.captures if c.url))
        playlists = [u for u in urls if is_candidate(u, self.content_type_for(u), self._patterns)]
        segments = [
            u for u in urls
            if u not in playlists and ".ts" in u.lower() and any(hint in u.lower() for hint in SEGMENT_CONTEXT_HINTS)
        ]
        master = next((u for u in playlists if "master.m3u8" in u.lower()), None)
        index = [u for u in playlists if "index" in u.lower()]
        other = [u for u in playlists if "master.m3u8" not in u.lower() and "index" not in u.lower()]
        logger.info(
            f"[anti-devtool] [{self.session_id}] Captured {len(self.captures)} events: "
            f"{len(playlists)} playlists, {len(segments)} segments"
        )
        return AggressiveResults(playlists, master, index, other, segments[:3], len(segments))


async def extract_dom_sources(page: Any) -> List[str]:
    """HLS-looking src/currentSrc values of <video> and <source> elements."""
    try:
        sources = await page.evaluate(_DOM_SOURCES_JS)
    except Exception as e:
        logger.debug(f"[anti-devtool] DOM extraction failed: {e}")
        return []
    return list(dict.fromkeys(s for s in sources or [] if isinstance(s, str) and s.startswith("http")))


# ── Dedicated browser ─────────────────────────────────────────────────────────

class AntiDevtoolBrowserPage:
    """Non-pooled browser + context + page, torn down as a unit by close()."""

    def __init__(
        self,
        settings: Settings,
        session_id: str,
        launcher: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self.settings = settings
        self.session_id = session_id
        self._launcher = launcher
        self._playwright: Optional[Any] = None
        self.browser: Optional[Any] = None
        self.context: Optional[Any] = None
        self.page: Optional[Any] = None
        self.pipeline = create_anti_devtool_pipeline(session_id)
        self._closed = False

    async def open(self, user_agent: Optional[str] = None, extra_headers: Optional[Dict[str, str]] = None) -> Any:
        logger.info(f"[anti-devtool] [{self.session_id}] 🛡️ Launching dedicated browser")
        if self._launcher is None:
            self._playwright = await async_playwright().start()
            args = list(dict.fromkeys(list(self.settings.launch_args) + CONCEALMENT_ARGS))
            self.browser = await self._playwright.chromium.launch(headless=self.settings.headless, args=args)
        else:
            self.browser = await self._launcher()

        headers = {"Accept-Language": "en-US,en;q=0.9"}
        headers.update(extra_headers or {})
        self.context = await self.browser.new_context(
            viewport={"width": 1920, "height": 1080},
            user_agent=user_agent or self.settings.user_agent,
            extra_http_headers=headers,
            service_workers="block",
        )
        self.context.set_default_navigation_timeout(self.settings.nav_timeout_ms)
        self.context.set_default_timeout(self.settings.default_timeout_ms)
        await self.context.add_init_script(BYPASS_SCRIPT)
        await self.context.route("**/*", self.pipeline.handle_route)
        self.page = await self.context.new_page()
        self.page.on("dialog", self._dismiss)
        return self.page

    async def _dismiss(self, dialog: Any) -> None:
        try:
            await dialog.dismiss()
        except Exception as e:
            logger.debug(f"[anti-devtool] [{self.session_id}] Dialog dismiss failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for name, closer in (("context", self.context), ("browser", self.browser)):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:
                logger.error(f"[anti-devtool] [{self.session_id}] Error closing {name}: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.error(f"[anti-devtool] [{self.session_id}] Error stopping playwright: {e}")
        logger.debug(f"[anti-devtool] [{self.session_id}] Dedicated browser released")

    async def __aenter__(self) -> "AntiDevtoolBrowserPage":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


# ── Resolver ──────────────────────────────────────────────────────────────────

@dataclass
class AntiDevtoolOutcome:
    candidates: List[Candidate] = field(default_factory=list)
    strategy: Optional[ActivationStrategy] = None
    interactions: int = 0
    navigation_ms: float = 0.0
    activation_ms: float = 0.0
    detection_ms: float = 0.0
    required_headers: Dict[str, str] = field(default_factory=dict)
    required_cookies: List[Cookie] = field(default_factory=list)


class AntiDevtoolResolver:
    """
    Navigate, click the player once, wait, then union DOM and network
    findings. Navigation failures raise the same typed errors as the
    standard path; everything after navigation is best effort.
    """

    def __init__(
        self,
        settings: Settings,
        page_factory: Optional[Callable[[str], AntiDevtoolBrowserPage]] = None,
    ) -> None:
        self.settings = settings
        self._page_factory = page_factory or (lambda session_id: AntiDevtoolBrowserPage(settings, session_id))

    async def run(
        self,
        url: str,
        session_id: str,
        deadline: Deadline,
        user_agent: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        wait_until: str = "domcontentloaded",
        patterns: Iterable[str] = (),
        nav_timeout_ms: Optional[int] = None,
        debug: bool = False,
    ) -> AntiDevtoolOutcome:
        outcome = AntiDevtoolOutcome()
        patterns = list(patterns or ())
        detector = AggressiveDetector(session_id, patterns, debug)
        store = PassiveDetector(session_id, patterns, debug)

        async with self._page_factory(session_id) as browser_page:
            page = await browser_page.open(user_agent=user_agent, extra_headers=extra_headers)
            detector.attach(page)
            try:
                outcome.navigation_ms = await self._navigate(page, url, deadline, wait_until, session_id, nav_timeout_ms)
                dom_sources = await extract_dom_sources(page)

                await asyncio.sleep(deadline.budget(self.settings.anti_devtool_settle_ms))
                activation_started = time.monotonic()
                clicked, clicked_player = await self._click_player(page, session_id)
                outcome.interactions = 1 if clicked else 0
                outcome.activation_ms = (time.monotonic() - activation_started) * 1000

                await asyncio.sleep(deadline.budget(self.settings.anti_devtool_wait_after_click_ms))

                detection_started = time.monotonic()
                dom_sources += await extract_dom_sources(page)
                results = detector.results()
                outcome.detection_ms = (time.monotonic() - detection_started) * 1000
            finally:
                detector.detach()

            for source in dom_sources:
                store.add_candidate(source, CandidateOrigin.DOM)
            for found in results.playlists:
                store.add_candidate(found, CandidateOrigin.RESPONSE, detector.content_type_for(found))
            await store.collect_cookies(browser_page.context)

        outcome.candidates = store.candidates
        outcome.required_cookies = store.required_cookies()
        if outcome.candidates:
            name = StrategyName.PLAY_ELEMENTS if clicked_player else StrategyName.CENTER_CLICK_ONCE
            outcome.strategy = ActivationStrategy(name=name, selector=clicked_player)
            logger.info(
                f"[anti-devtool] [{session_id}] 🎉 {len(outcome.candidates)} candidates "
                f"({len(dom_sources)} from DOM, {len(results.playlists)} from network)"
            )
        else:
            logger.warning(f"[anti-devtool] [{session_id}] ⚠️ No HLS found in DOM or network")
        return outcome

    async def _navigate(
        self,
        page: Any,
        url: str,
        deadline: Deadline,
        wait_until: str,
        session_id: str,
        nav_timeout_ms: Optional[int] = None,
    ) -> float:
        timeout_ms = min(nav_timeout_ms or self.settings.nav_timeout_ms, deadline.remaining_ms())
        if timeout_ms <= 0:
            raise NavigationTimeoutError(f"No time left to navigate to {sanitize_url_for_logging(url)}")
        started = time.monotonic()
        logger.info(f"[anti-devtool] [{session_id}] Navigating to {sanitize_url_for_logging(url)}")
        try:
            await page.goto(
                url,
                wait_until=wait_until if wait_until in WAIT_UNTIL_VALUES else "domcontentloaded",
                timeout=timeout_ms,
            )
        except Exception as e:
            raise classify_navigation_error(e, sanitize_url_for_logging(url)) from e
        return (time.monotonic() - started) * 1000

    async def _click_player(self, page: Any, session_id: str) -> Tuple[bool, Optional[str]]:
        """Click the largest player element, or the viewport center. Returns (clicked, selector)."""
        try:
            target = await page.evaluate(_LARGEST_PLAYER_JS, PLAYER_SELECTORS)
        except Exception as e:
            logger.debug(f"[anti-devtool] [{session_id}] Player lookup failed: {e}")
            target = None
        try:
            if target:
                await page.mouse.click(target["x"], target["y"])
                return True, target.get("selector")
            viewport = page.viewport_size or {"width": 1920, "height": 1080}
            await page.mouse.click(viewport["width"] / 2, viewport["height"] / 2)
            return True, None
        except Exception as e:
            logger.debug(f"[anti-devtool] [{session_id}] Player click failed: {e}")
        return False, None
