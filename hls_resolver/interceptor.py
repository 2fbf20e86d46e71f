"""
Request interception pipeline.

One pipeline per page lease, routed on the browser context before the first
navigation so no request escapes it. Rules are plain data (name, priority,
predicate, decision); the pipeline evaluates them in descending priority, ties
broken by registration order, and the first matching rule that aborts wins.

    pipeline = create_standard_pipeline(session_id)
    await context.route("**/*", pipeline.handle_route)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .url_utils import extract_origin, sanitize_url_for_logging

logger = logging.getLogger(__name__)


class InterceptAction(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(frozen=True)
class InterceptRule:
    name: str
    priority: int
    predicate: Callable[[Any], bool]
    decision: Callable[[Any], InterceptAction]


# ── Rule data ─────────────────────────────────────────────────────────────────

ANTI_DEVTOOL_SCRIPT_PATTERNS = (
    "disable-devtool",
    "cdn.jsdelivr.net/npm/disable-devtool",
    "unpkg.com/disable-devtool",
    "console-ban",
    "devtools-detector",
    "anti-devtools",
)

AD_DOMAINS = (
    "ads-twitter.com",
    "imasdk.googleapis.com",
    "googleads.com",
    "googlesyndication.com",
    "doubleclick.net",
    "ptichoolsougn.net",
    "campfirecroutondecorator.com",
    "jilliandescribecompany.com/log",
    "static.ads-twitter.com",
    "facebook.com/tr",
)

TRACKING_PATTERNS = (
    "/log_js_error",
    "/analytics",
    "/tracking",
    "/metrics",
    "/ping",
    "ima3.js",
    "vignette.min.js",
    "uwt.js",
    "analytics.google.com",
    "googletagmanager.com",
    "google-analytics.com",
)

# URL fragments and resource types the optimization rule never touches
STREAMING_URL_HINTS = (".m3u8", ".ts", "manifest", "playlist", "hls", "urlset")
STREAMING_RESOURCE_TYPES = ("media", "xhr", "fetch", "document", "script")
HEAVY_RESOURCE_TYPES = ("image", "stylesheet", "font")
ARTWORK_HINTS = ("thumb", "preview", "poster")


def _abort(_request: Any) -> InterceptAction:
    return InterceptAction.ABORT


def _url(request: Any) -> str:
    return (request.url or "").lower()


def anti_devtool_rule() -> InterceptRule:
    return InterceptRule(
        name="anti-devtool-blocker",
        priority=1000,
        predicate=lambda r: r.resource_type == "script"
        and any(p in _url(r) for p in ANTI_DEVTOOL_SCRIPT_PATTERNS),
        decision=_abort,
    )


def ad_block_rule() -> InterceptRule:
    return InterceptRule(
        name="ad-blocker",
        priority=900,
        predicate=lambda r: any(d in _url(r) for d in AD_DOMAINS),
        decision=_abort,
    )


def tracking_block_rule() -> InterceptRule:
    return InterceptRule(
        name="tracking-blocker",
        priority=800,
        predicate=lambda r: any(p in _url(r) for p in TRACKING_PATTERNS),
        decision=_abort,
    )


def _is_droppable_resource(request: Any) -> bool:
    url = _url(request)
    resource_type = request.resource_type
    if resource_type in STREAMING_RESOURCE_TYPES:
        return False
    if any(hint in url for hint in STREAMING_URL_HINTS):
        return False
    if resource_type not in HEAVY_RESOURCE_TYPES:
        return False
    return not any(hint in url for hint in ARTWORK_HINTS)


def optimization_rule() -> InterceptRule:
    return InterceptRule(
        name="optimization",
        priority=100,
        predicate=_is_droppable_resource,
        decision=_abort,
    )


def load_filter_list(path: Path) -> Set[str]:
    """
    Host names from a filter list file.

    Understands plain host lines, hosts-file lines ("0.0.0.0 host") and the
    "||host^" network filter form; comments ("!", "#") and cosmetic filters
    are skipped.
    """
    hosts: Set[str] = set()
    for raw in Path(path).read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw.strip()
        if not line or line.startswith(("!", "#", "[", "@@")) or "##" in line:
            continue
        if line.startswith("||"):
            line = line[2:].split("^", 1)[0].split("/", 1)[0]
        else:
            parts = line.split()
            line = parts[-1] if len(parts) > 1 else parts[0]
        line = line.strip().lower().lstrip(".")
        if line and "." in line and "*" not in line:
            hosts.add(line)
    return hosts


def filter_list_rule(hosts: Iterable[str]) -> InterceptRule:
    blocked = frozenset(h.lower() for h in hosts)

    def matches(request: Any) -> bool:
        try:
            host = (urlsplit(request.url).hostname or "").lower()
        except ValueError:
            return False
        while host:
            if host in blocked:
                return True
            _, _, host = host.partition(".")
        return False

    return InterceptRule(name="filter-list", priority=850, predicate=matches, decision=_abort)


class NavigationLock:
    """
    Blocks main-frame document navigations away from the page's origin.

    Inactive until arm() is called with the origin of the committed page, so
    the initial navigation (and its same-origin redirects) always passes.
    """

    def __init__(self) -> None:
        self.origin: Optional[str] = None

    @property
    def armed(self) -> bool:
        return self.origin is not None

    def arm(self, page_url: str) -> None:
        self.origin = extract_origin(page_url) or None

    def blocks(self, request: Any) -> bool:
        if self.origin is None:
            return False
        if request.resource_type != "document" or not request.is_navigation_request():
            return False
        try:
            frame = request.frame
        except Exception:
            # service worker requests have no frame
            return False
        if frame is None or frame.parent_frame is not None:
            return False
        target = extract_origin(request.url)
        return bool(target) and target != self.origin

    def rule(self) -> InterceptRule:
        return InterceptRule(name="navigation-lock", priority=700, predicate=self.blocks, decision=_abort)


# ── Pipeline ──────────────────────────────────────────────────────────────────

class InterceptPipeline:
    """Ordered rule set with a single route handler."""

    def __init__(
        self,
        rules: Iterable[InterceptRule] = (),
        session_id: Optional[str] = None,
        log_blocked: bool = False,
    ) -> None:
        self._entries: List[Tuple[int, int, InterceptRule]] = []
        self._counter = 0
        self.session_id = session_id
        self.log_blocked = log_blocked
        self.blocked_count = 0
        for rule in rules:
            self.register(rule)

    @property
    def rules(self) -> List[InterceptRule]:
        return [rule for _, _, rule in self._entries]

    def register(self, rule: InterceptRule) -> None:
        self._entries.append((-rule.priority, self._counter, rule))
        self._counter += 1
        self._entries.sort(key=lambda entry: (entry[0], entry[1]))

    def remove(self, name: str) -> None:
        self._entries = [entry for entry in self._entries if entry[2].name != name]

    def evaluate(self, request: Any) -> Tuple[InterceptAction, Optional[str]]:
        """Decision for request and the name of the rule that made it (None when allowed)."""
        for rule in self.rules:
            if not rule.predicate(request):
                continue
            if rule.decision(request) == InterceptAction.ABORT:
                return InterceptAction.ABORT, rule.name
        return InterceptAction.CONTINUE, None

    async def handle_route(self, route: Any, request: Any) -> None:
        """Route handler for context.route("**/*", ...)."""
        try:
            action, rule_name = self.evaluate(request)
        except Exception as e:
            logger.error(
                f"[intercept] [{self.session_id}] Rule evaluation failed for "
                f"{sanitize_url_for_logging(request.url)}: {e}"
            )
            action, rule_name = InterceptAction.CONTINUE, None

        try:
            if action == InterceptAction.ABORT:
                self.blocked_count += 1
                log = logger.info if self.log_blocked else logger.debug
                log(
                    f"[intercept] [{self.session_id}] Blocked {request.resource_type} "
                    f"by {rule_name}: {sanitize_url_for_logging(request.url)[:120]}"
                )
                await route.abort()
            else:
                await route.continue_()
        except Exception as e:
            # page or context already closed
            logger.debug(f"[intercept] [{self.session_id}] Route settle failed: {e}")


def create_standard_pipeline(
    session_id: Optional[str] = None,
    filter_hosts: Optional[Iterable[str]] = None,
) -> InterceptPipeline:
    rules = [anti_devtool_rule(), ad_block_rule(), tracking_block_rule(), optimization_rule()]
    if filter_hosts:
        rules.append(filter_list_rule(filter_hosts))
    return InterceptPipeline(rules, session_id=session_id)


def create_anti_devtool_pipeline(session_id: Optional[str] = None) -> InterceptPipeline:
    rules = [anti_devtool_rule(), ad_block_rule(), tracking_block_rule(), optimization_rule()]
    return InterceptPipeline(rules, session_id=session_id, log_blocked=True)
