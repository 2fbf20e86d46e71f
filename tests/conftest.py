"""
Shared fixtures and fake playwright objects for the resolver tests.

No test launches a real browser: pages, contexts, browsers, routes and CDP
sessions are small in-memory doubles that record what was done to them and
let a test script what the "page" does on navigation and on click.
"""

import asyncio
import pathlib
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest

# ─── Path setup (must happen before any package import) ──────────────────────

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from hls_resolver.config import Settings  # noqa: E402

# ─── Playlists ───────────────────────────────────────────────────────────────

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.4d401e,mp4a.40.2"
low/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2800000,RESOLUTION=1280x720,FRAME-RATE=29.970
https://cdn.example.com/hi/index.m3u8
"""

VOD_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:10
#EXTINF:10,
seg1.ts
#EXT-X-ENDLIST
"""

LIVE_LL_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXT-X-PART-INF:PART-TARGET=1.0
#EXT-X-PART:DURATION=1.0,URI="part1.mp4"
#EXTINF:4,
seg1.ts
"""


# ─── Fake playwright objects ─────────────────────────────────────────────────

class Emitter:
    """pyee-style on/remove_listener; emit schedules coroutine handlers as tasks."""

    def __init__(self) -> None:
        self.listeners: Dict[str, List[Callable[..., Any]]] = {}
        self.tasks: List[asyncio.Future] = []

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.get(event, []).remove(handler)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self.listeners.get(event, []))
        return sum(len(handlers) for handlers in self.listeners.values())

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self.listeners.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                self.tasks.append(asyncio.ensure_future(result))


class FakeFrame:
    def __init__(self, parent_frame: Optional["FakeFrame"] = None) -> None:
        self.parent_frame = parent_frame


class FakeRequest:
    def __init__(
        self,
        url: str,
        resource_type: str = "xhr",
        headers: Optional[Dict[str, str]] = None,
        navigation: bool = False,
        frame: Optional[FakeFrame] = None,
    ) -> None:
        self.url = url
        self.resource_type = resource_type
        self.headers = headers or {}
        self._navigation = navigation
        self.frame = frame

    def is_navigation_request(self) -> bool:
        return self._navigation


class FakeResponse:
    def __init__(self, url: str, status: int = 200, headers: Optional[Dict[str, str]] = None) -> None:
        self.url = url
        self.status = status
        self.headers = headers or {}


class FakeRoute:
    def __init__(self) -> None:
        self.outcome: Optional[str] = None

    async def abort(self) -> None:
        self.outcome = "abort"

    async def continue_(self) -> None:
        self.outcome = "continue"


class FakeMouse:
    def __init__(self, page: "FakePage") -> None:
        self.page = page
        self.clicks: List[tuple] = []

    async def click(self, x: float, y: float) -> None:
        self.clicks.append((x, y))
        if self.page.on_click is not None:
            self.page.on_click(self.page, len(self.clicks))


class FakeCDPSession(Emitter):
    def __init__(self) -> None:
        super().__init__()
        self.sent: List[str] = []
        self.detached = False

    async def send(self, method: str, params: Optional[dict] = None) -> dict:
        self.sent.append(method)
        return {}

    async def detach(self) -> None:
        self.detached = True


class FakePage(Emitter):
    """
    on_goto(page) runs after a successful goto, on_click(page, n) after the
    n-th mouse click. evaluate_result(script, arg) answers page.evaluate().
    """

    def __init__(self, context: "FakeContext") -> None:
        super().__init__()
        self.context = context
        self.url = "about:blank"
        self.viewport_size = {"width": 1000, "height": 600}
        self.mouse = FakeMouse(self)
        self.init_scripts: List[str] = []
        self.gotos: List[dict] = []
        self.goto_error: Optional[BaseException] = None
        self.on_goto: Optional[Callable[["FakePage"], None]] = None
        self.on_click: Optional[Callable[["FakePage", int], None]] = None
        self.evaluate_result: Callable[[str, Any], Any] = lambda script, arg: []
        self.closed = False

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[float] = None) -> None:
        self.gotos.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        if self.on_goto is not None:
            self.on_goto(self)

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return self.evaluate_result(script, arg)

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[float] = None) -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    # helpers for tests
    def serve(self, url: str, status: int = 200, content_type: Optional[str] = None) -> None:
        """Simulate the page fetching url: emits request then response."""
        self.emit("request", FakeRequest(url))
        headers = {"content-type": content_type} if content_type else {}
        self.emit("response", FakeResponse(url, status, headers))


class FakeContext(Emitter):
    def __init__(self, browser: Optional["FakeBrowser"] = None, options: Optional[dict] = None) -> None:
        super().__init__()
        self.browser = browser
        self.options = options or {}
        self.pages: List[FakePage] = []
        self.routes: List[tuple] = []
        self.cdp_sessions: List[FakeCDPSession] = []
        self.cookie_jar: List[dict] = []
        self.init_scripts: List[str] = []
        self.navigation_timeout: Optional[float] = None
        self.default_timeout: Optional[float] = None
        self.closed = False
        self.frame_cdp_supported = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        if self.browser is not None and self.browser.on_new_page is not None:
            self.browser.on_new_page(page)
        return page

    async def new_cdp_session(self, target: Any) -> FakeCDPSession:
        if isinstance(target, FakeFrame) and not self.frame_cdp_supported:
            raise RuntimeError("This frame does not have a separate CDP session")
        session = FakeCDPSession()
        self.cdp_sessions.append(session)
        return session

    async def route(self, pattern: str, handler: Callable[..., Any]) -> None:
        self.routes.append((pattern, handler))

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self.navigation_timeout = timeout

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def cookies(self) -> List[dict]:
        return list(self.cookie_jar)

    async def close(self) -> None:
        self.closed = True


class FakeBrowser(Emitter):
    def __init__(self) -> None:
        super().__init__()
        self.connected = True
        self.contexts: List[FakeContext] = []
        self.closed = False
        self.on_new_page: Optional[Callable[[FakePage], None]] = None

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeLauncher:
    """Async callable that hands out FakeBrowser instances and remembers them."""

    def __init__(self) -> None:
        self.browsers: List[FakeBrowser] = []

    async def __call__(self) -> FakeBrowser:
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser


# ─── Fixtures ────────────────────────────────────────────────────────────────

def fast_settings(**overrides: Any) -> Settings:
    """Settings with short waits so activation tests finish in well under a second."""
    values = dict(
        browser_pool_size=1,
        max_concurrent_pages=2,
        nav_timeout_ms=2_000,
        default_timeout_ms=2_000,
        resolve_timeout_ms=5_000,
        immediate_check_ms=50,
        settle_wait_ms=50,
        step_timeout_ms=1_500,
        step_recheck_ms=100,
        m3u8_download_timeout_ms=1_000,
        strategy_cache_type="memory",
        allowlist_hosts=(),
        anti_devtool_enabled=False,
        anti_devtool_domains=(),
        anti_devtool_auto_detect=False,
        anti_devtool_settle_ms=20,
        anti_devtool_wait_after_click_ms=50,
        adblock_enabled=False,
        adblock_filter_path="",
        pool_shutdown_grace_seconds=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()
