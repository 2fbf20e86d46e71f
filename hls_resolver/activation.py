"""
Activation strategy engine.

Drives one leased page from navigation to "a manifest candidate exists":

    INIT -> NAVIGATED -> CHECK_IMMEDIATE -> DONE
                                         -> INTERACTING -> DONE

Most players start on their own, so the engine first just waits. Only when
nothing shows up does it walk the fallback chain of page interactions. Each
step reports a tagged StepOutcome; the first step followed by a candidate is
the strategy recorded for the domain. A cached strategy is tried first but the
rest of the chain always follows it.

Every wait is cut from one Deadline, nothing here waits unbounded.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .detector import PassiveDetector
from .errors import NavigationTimeoutError, classify_navigation_error
from .interceptor import InterceptPipeline, NavigationLock
from .models import ActivationStrategy, ResolveOptions, StrategyName
from .strategy_cache import StrategyCache
from .url_utils import extract_domain, extract_origin, sanitize_url_for_logging

logger = logging.getLogger(__name__)

WAIT_UNTIL_VALUES = ("commit", "domcontentloaded", "load", "networkidle")

# Installed before any page script: no popups, no blocking dialogs
GUARD_SCRIPT = """
(() => {
  const noop = () => null;
  try { window.open = noop; } catch (e) {}
  try { window.alert = noop; } catch (e) {}
  try { window.confirm = () => false; } catch (e) {}
  try { window.prompt = () => null; } catch (e) {}
})();
"""

OVERLAY_SELECTORS = [
    "[class*='close']",
    "[id*='close']",
    "[aria-label*='close' i]",
    "[aria-label*='dismiss' i]",
    "[class*='overlay'] button",
    "[class*='modal'] button",
    "[class*='popup'] button",
    "[class*='consent'] button",
    ".fc-cta-consent",
    "button[mode='primary']",
]

PLAY_SELECTORS = [
    "video",
    "[class*='play']",
    "[id*='play']",
    "[aria-label*='play' i]",
    "[data-plyr='play']",
    ".vjs-big-play-button",
    ".jw-display-icon-container",
    ".plyr__control--overlaid",
    "[data-hls]",
    ".video-player",
]

MAX_PLAY_ELEMENTS = 5
MAX_IFRAMES = 2
DOUBLE_CLICK_GAP = 0.1

# Visible elements matching any selector: [{x, y, width, height, selector}]
_VISIBLE_RECTS_JS = """
(selectors) => {
  const out = [];
  const seen = new Set();
  for (const selector of selectors) {
    let nodes = [];
    try { nodes = document.querySelectorAll(selector); } catch (e) { continue; }
    for (const el of nodes) {
      if (seen.has(el)) continue;
      seen.add(el);
      const r = el.getBoundingClientRect();
      const style = window.getComputedStyle(el);
      if (r.width < 4 || r.height < 4) continue;
      if (style.visibility === 'hidden' || style.display === 'none' || style.opacity === '0') continue;
      if (r.bottom < 0 || r.right < 0 || r.top > window.innerHeight || r.left > window.innerWidth) continue;
      out.push({x: r.left + r.width / 2, y: r.top + r.height / 2, width: r.width, height: r.height, selector});
    }
  }
  return out;
}
"""


class Deadline:
    """End-to-end time budget on the monotonic clock."""

    def __init__(self, total_ms: float) -> None:
        self.total_ms = total_ms
        self._started = time.monotonic()
        self._ends = self._started + total_ms / 1000

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._ends - time.monotonic())

    def remaining_ms(self) -> int:
        return int(self.remaining() * 1000)

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def budget(self, cap_ms: float) -> float:
        """Seconds for a sub-wait: cap_ms, cut down to what is left."""
        return max(0.0, min(cap_ms / 1000, self.remaining()))


class ActivationState(str, Enum):
    INIT = "init"
    NAVIGATED = "navigated"
    CHECK_IMMEDIATE = "check_immediate"
    INTERACTING = "interacting"
    DONE = "done"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class StepOutcome:
    strategy: StrategyName
    status: StepStatus
    interactions: int = 0
    selector: Optional[str] = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


@dataclass
class ActivationReport:
    strategy: Optional[ActivationStrategy] = None
    interactions: int = 0
    outcomes: List[StepOutcome] = field(default_factory=list)
    states: List[ActivationState] = field(default_factory=list)
    navigation_ms: float = 0.0
    activation_ms: float = 0.0
    detection_ms: float = 0.0


class _Tally:
    """Interactions performed by one step, kept even when the step dies midway."""

    def __init__(self) -> None:
        self.count = 0
        self.selector: Optional[str] = None


StepAction = Callable[[Any, PassiveDetector, _Tally], Awaitable[None]]


def _center(page: Any) -> Dict[str, float]:
    viewport = page.viewport_size or {"width": 1920, "height": 1080}
    return {"x": viewport["width"] / 2, "y": viewport["height"] / 2}


async def _click_at(page: Any, tally: _Tally, x: float, y: float) -> None:
    await page.mouse.click(x, y)
    tally.count += 1


async def _visible_rects(page: Any, selectors: List[str]) -> List[Dict[str, Any]]:
    rects = await page.evaluate(_VISIBLE_RECTS_JS, selectors)
    return list(rects or [])


def _by_area(rects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(rects, key=lambda r: r.get("width", 0) * r.get("height", 0), reverse=True)


# ── Chain steps ───────────────────────────────────────────────────────────────

async def center_click(page: Any, detector: PassiveDetector, tally: _Tally) -> None:
    point = _center(page)
    await _click_at(page, tally, point["x"], point["y"])


async def center_double_click(page: Any, detector: PassiveDetector, tally: _Tally) -> None:
    """Two center clicks in quick succession, for players that want a second one."""
    point = _center(page)
    await _click_at(page, tally, point["x"], point["y"])
    await asyncio.sleep(DOUBLE_CLICK_GAP)
    await _click_at(page, tally, point["x"], point["y"])


async def overlay_close(page: Any, detector: PassiveDetector, tally: _Tally) -> None:
    """Click the first visible close/dismiss affordance, then the center again."""
    rects = await _visible_rects(page, OVERLAY_SELECTORS)
    if not rects:
        return
    target = rects[0]
    tally.selector = target.get("selector")
    await _click_at(page, tally, target["x"], target["y"])
    await asyncio.sleep(0.2)
    point = _center(page)
    await _click_at(page, tally, point["x"], point["y"])


async def play_elements(page: Any, detector: PassiveDetector, tally: _Tally) -> None:
    """Click up to five player-like elements, largest first."""
    for rect in _by_area(await _visible_rects(page, PLAY_SELECTORS))[:MAX_PLAY_ELEMENTS]:
        if tally.selector is None:
            tally.selector = rect.get("selector")
        await _click_at(page, tally, rect["x"], rect["y"])
        if detector.has_candidates():
            return
        await asyncio.sleep(0.3)


async def iframe_click(page: Any, detector: PassiveDetector, tally: _Tally) -> None:
    """Click the center of the largest, then the second largest, iframe."""
    for rect in _by_area(await _visible_rects(page, ["iframe"]))[:MAX_IFRAMES]:
        tally.selector = "iframe"
        await _click_at(page, tally, rect["x"], rect["y"])
        if detector.has_candidates():
            return
        await asyncio.sleep(0.3)


STEP_ACTIONS: Dict[StrategyName, StepAction] = {
    StrategyName.CENTER_CLICK_ONCE: center_click,
    StrategyName.CENTER_CLICK_DOUBLE: center_double_click,
    StrategyName.OVERLAY_CLOSE: overlay_close,
    StrategyName.PLAY_ELEMENTS: play_elements,
    StrategyName.IFRAME_CLICK: iframe_click,
}


def build_chain(click_retries: int, cached: Optional[ActivationStrategy] = None) -> List[StrategyName]:
    """Fixed fallback order, with a cached non-none strategy moved to the front."""
    chain = [StrategyName.CENTER_CLICK_ONCE]
    if click_retries > 1:
        chain.append(StrategyName.CENTER_CLICK_DOUBLE)
    chain += [StrategyName.OVERLAY_CLOSE, StrategyName.PLAY_ELEMENTS, StrategyName.IFRAME_CLICK]
    if cached is not None and cached.name != StrategyName.NONE:
        chain = [cached.name] + [name for name in chain if name != cached.name]
    return chain


class ActivationEngine:
    """Stateless between runs; everything per-resolution lives in run()."""

    def __init__(self, strategy_cache: StrategyCache, settings: Settings) -> None:
        self.strategy_cache = strategy_cache
        self.settings = settings

    async def run(
        self,
        page: Any,
        detector: PassiveDetector,
        url: str,
        options: ResolveOptions,
        deadline: Deadline,
        pipeline: Optional[InterceptPipeline] = None,
    ) -> ActivationReport:
        report = ActivationReport(states=[ActivationState.INIT])
        started_wall = time.time()
        session = detector.session_id
        log = logger.info if options.debug else logger.debug
        domain = extract_domain(url)

        lock = NavigationLock()
        if pipeline is not None:
            pipeline.register(lock.rule())
        guards = await self._install_guards(page, url, session)

        try:
            # NAVIGATED
            nav_started = time.monotonic()
            await self._navigate(page, url, options, deadline, session)
            report.navigation_ms = (time.monotonic() - nav_started) * 1000
            lock.arm(page.url or url)
            report.states.append(ActivationState.NAVIGATED)
            log(f"[activation] [{session}] Navigated in {report.navigation_ms:.0f}ms")

            activation_started = time.monotonic()

            # CHECK_IMMEDIATE
            report.states.append(ActivationState.CHECK_IMMEDIATE)
            if await detector.wait_for_candidate(deadline.budget(self.settings.immediate_check_ms)):
                report.strategy = ActivationStrategy(name=StrategyName.NONE)
            else:
                report.strategy = await self._interact(page, detector, domain, options, deadline, report)

            report.activation_ms = (time.monotonic() - activation_started) * 1000
            report.states.append(ActivationState.DONE)
        finally:
            self._remove_guards(guards)

        if report.strategy is not None:
            await self._remember(domain, report.strategy, session)
        first_seen = [c.first_seen_at for c in detector.candidates]
        if first_seen:
            report.detection_ms = max(0.0, (min(first_seen) - started_wall) * 1000)

        log(
            f"[activation] [{session}] Done: strategy="
            f"{report.strategy.name.value if report.strategy else None} "
            f"interactions={report.interactions}"
        )
        return report

    async def _interact(
        self,
        page: Any,
        detector: PassiveDetector,
        domain: str,
        options: ResolveOptions,
        deadline: Deadline,
        report: ActivationReport,
    ) -> Optional[ActivationStrategy]:
        cached = await self._lookup(domain, detector.session_id)

        if cached is None or cached.name != StrategyName.NONE:
            if await detector.wait_for_candidate(deadline.budget(self.settings.settle_wait_ms)):
                return ActivationStrategy(name=StrategyName.NONE)

        report.states.append(ActivationState.INTERACTING)
        for name in build_chain(options.click_retries, cached):
            if deadline.expired:
                break
            outcome = await self.run_step(name, page, detector, deadline)
            report.outcomes.append(outcome)
            report.interactions += outcome.interactions
            if outcome.succeeded:
                return ActivationStrategy(
                    name=name,
                    selector=outcome.selector,
                    timeout_ms=self.settings.step_timeout_ms,
                )

        # Slow pages surface their stream after the chain gave up
        if await detector.wait_for_candidate(deadline.remaining()):
            return ActivationStrategy(name=StrategyName.NONE)
        logger.info(f"[activation] [{detector.session_id}] No candidate after full chain")
        return None

    async def run_step(
        self,
        name: StrategyName,
        page: Any,
        detector: PassiveDetector,
        deadline: Deadline,
    ) -> StepOutcome:
        """Run one chain step under its own timeout, then re-check the detector."""
        action = STEP_ACTIONS[name]
        tally = _Tally()
        budget = deadline.budget(self.settings.step_timeout_ms)
        if budget <= 0:
            return StepOutcome(name, StepStatus.TIMED_OUT, detail="no budget left")

        try:
            await asyncio.wait_for(action(page, detector, tally), timeout=budget)
        except asyncio.TimeoutError:
            logger.debug(f"[activation] [{detector.session_id}] {name.value} timed out")
            return StepOutcome(name, StepStatus.TIMED_OUT, tally.count, tally.selector)
        except Exception as e:
            logger.debug(f"[activation] [{detector.session_id}] {name.value} failed: {e}")
            return StepOutcome(name, StepStatus.FAILED, tally.count, tally.selector, detail=str(e))

        if tally.count == 0:
            return StepOutcome(name, StepStatus.FAILED, detail="nothing to interact with")
        if await detector.wait_for_candidate(deadline.budget(self.settings.step_recheck_ms)):
            logger.info(f"[activation] [{detector.session_id}] ✅ {name.value} surfaced a candidate")
            return StepOutcome(name, StepStatus.SUCCEEDED, tally.count, tally.selector)
        return StepOutcome(name, StepStatus.FAILED, tally.count, tally.selector, detail="no candidate")

    # ── Navigation and guards ─────────────────────────────────────────────────

    async def _navigate(
        self,
        page: Any,
        url: str,
        options: ResolveOptions,
        deadline: Deadline,
        session: str,
    ) -> None:
        nav_cap = options.nav_timeout_ms or self.settings.nav_timeout_ms
        timeout_ms = min(nav_cap, deadline.remaining_ms())
        if timeout_ms <= 0:
            raise NavigationTimeoutError(f"No time left to navigate to {sanitize_url_for_logging(url)}")
        wait_until = options.wait_until if options.wait_until in WAIT_UNTIL_VALUES else "domcontentloaded"
        logger.info(f"[activation] [{session}] Navigating to {sanitize_url_for_logging(url)}")
        try:
            await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except Exception as e:
            error = classify_navigation_error(e, sanitize_url_for_logging(url))
            logger.warning(f"[activation] [{session}] {error.message}")
            raise error from e

    async def _install_guards(
        self, page: Any, url: str, session: str
    ) -> List[Tuple[Any, str, Callable[..., Any]]]:
        origin = extract_origin(url)

        try:
            await page.add_init_script(GUARD_SCRIPT)
        except Exception as e:
            logger.debug(f"[activation] [{session}] Guard script not installed: {e}")

        async def dismiss(dialog: Any) -> None:
            try:
                await dialog.dismiss()
            except Exception as e:
                logger.debug(f"[activation] [{session}] Dialog dismiss failed: {e}")

        async def close_foreign_popup(popup: Any) -> None:
            if popup is page:
                return
            try:
                await popup.wait_for_load_state("commit", timeout=3_000)
            except Exception:
                pass
            if extract_origin(popup.url or "") != origin:
                logger.info(f"[activation] [{session}] Closing foreign popup {sanitize_url_for_logging(popup.url or '')[:80]}")
                try:
                    await popup.close()
                except Exception as e:
                    logger.debug(f"[activation] [{session}] Popup close failed: {e}")

        listeners = [(page, "dialog", dismiss), (page.context, "page", close_foreign_popup)]
        for emitter, event, handler in listeners:
            emitter.on(event, handler)
        return listeners

    def _remove_guards(self, listeners: List[Tuple[Any, str, Callable[..., Any]]]) -> None:
        for emitter, event, handler in listeners:
            try:
                emitter.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"[activation] Guard removal ({event}) failed: {e}")

    # ── Strategy cache ────────────────────────────────────────────────────────

    async def _lookup(self, domain: str, session: str) -> Optional[ActivationStrategy]:
        try:
            cached = await self.strategy_cache.get(domain)
        except Exception as e:
            logger.warning(f"[activation] [{session}] Strategy cache lookup failed: {e}")
            return None
        if cached is not None:
            logger.info(f"[activation] [{session}] Cached strategy for {domain}: {cached.name.value}")
        return cached

    async def _remember(self, domain: str, strategy: ActivationStrategy, session: str) -> None:
        try:
            await self.strategy_cache.set(domain, strategy)
        except Exception as e:
            logger.warning(f"[activation] [{session}] Strategy cache store failed: {e}")
