"""
HLSResolver: page URL in, ResolutionResult out.

    resolver = HLSResolver(settings, pool, strategy_cache)
    result = await resolver.resolve("https://example.com/watch/1")

Validation failures never touch the pool. Navigation failures surface as the
typed errors in errors.py. Everything after navigation degrades gracefully: a
candidate that cannot be fetched or parsed is left out of the result, and a
page that never produced a candidate returns an empty manifest list.
"""

import asyncio
import logging
import secrets
import time
from typing import List, Optional

from .activation import ActivationEngine, Deadline
from .anti_devtool import AntiDevtoolDetector, AntiDevtoolResolver
from .browser_pool import BrowserPool
from .config import MOBILE_USER_AGENT, Settings
from .detector import PassiveDetector
from .errors import DomainNotAllowedError, InvalidManifest, InvalidUrlError, ResolveError
from .m3u8_parser import parse_manifest
from .manifest_fetcher import ManifestFetcher
from .models import (
    Candidate,
    CandidateOrigin,
    Manifest,
    RawFinding,
    ResolutionResult,
    ResolveOptions,
    Timings,
)
from .strategy_cache import StrategyCache
from .url_utils import is_domain_allowed, is_valid_url, normalize_url, sanitize_url_for_logging

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"


def score_manifest(manifest: Manifest) -> int:
    score = len(manifest.variants) * 10
    if len(manifest.variants) > 1:
        score += 50
    if manifest.is_live:
        score += 20
    if manifest.is_low_latency:
        score += 30
    return score


def pick_best_guess(manifests: List[Manifest]) -> Optional[int]:
    """Index of the preferred manifest; first one wins ties."""
    if not manifests:
        return None
    best_index, best_score = 0, score_manifest(manifests[0])
    for index, manifest in enumerate(manifests[1:], start=1):
        score = score_manifest(manifest)
        if score > best_score:
            best_index, best_score = index, score
    return best_index


def build_notes(candidate_count: int, manifests: List[Manifest]) -> List[str]:
    notes: List[str] = []
    if candidate_count == 0:
        notes.append("No HLS candidates were detected on the page")
    elif not manifests:
        notes.append(f"Detected {candidate_count} HLS candidates but none could be processed")
    elif len(manifests) < candidate_count:
        notes.append(f"Processed {len(manifests)} of {candidate_count} detected candidates")

    if len(manifests) > 1:
        notes.append("Multiple streams found; best_guess points at the recommended one")

    live = sum(1 for m in manifests if m.is_live)
    low_latency = sum(1 for m in manifests if m.is_low_latency)
    if live:
        notes.append(f"{live} stream(s) detected as live")
    if low_latency:
        notes.append(f"{low_latency} stream(s) with low latency detected")
    return notes


class HLSResolver:
    def __init__(
        self,
        settings: Settings,
        pool: BrowserPool,
        strategy_cache: StrategyCache,
        fetcher: Optional[ManifestFetcher] = None,
        anti_devtool_detector: Optional[AntiDevtoolDetector] = None,
        anti_devtool_resolver: Optional[AntiDevtoolResolver] = None,
    ) -> None:
        self.settings = settings
        self.pool = pool
        self.engine = ActivationEngine(strategy_cache, settings)
        self.fetcher = fetcher or ManifestFetcher(settings.user_agent, settings.m3u8_download_timeout_ms)
        self.anti_devtool_detector = anti_devtool_detector or AntiDevtoolDetector(settings)
        self.anti_devtool_resolver = anti_devtool_resolver or AntiDevtoolResolver(settings)

    def validate(self, url: str) -> None:
        if not is_valid_url(url):
            raise InvalidUrlError(f"Invalid URL: {sanitize_url_for_logging(str(url))}")
        if not is_domain_allowed(url, self.settings.allowlist_hosts):
            raise DomainNotAllowedError(f"Domain not allowed: {sanitize_url_for_logging(url)}")

    async def resolve(self, url: str, options: Optional[ResolveOptions] = None) -> ResolutionResult:
        """
        Resolve url to its HLS manifests.

        Raises InvalidUrlError / DomainNotAllowedError before any browser
        work, NavigationError (or its timeout/network subclasses) when the
        page cannot be loaded, and PoolShutdownError while shutting down.
        """
        options = options or ResolveOptions()
        session_id = generate_session_id()
        safe_url = sanitize_url_for_logging(url)
        logger.info(f"[resolve] [{session_id}] Starting resolve for {safe_url}")

        self.validate(url)
        deadline = Deadline(options.timeout_ms or self.settings.resolve_timeout_ms)

        try:
            if await self._use_anti_devtool(url, options, session_id):
                result = await self._resolve_anti_devtool(url, options, session_id, deadline)
            else:
                result = await self._resolve_standard(url, options, session_id, deadline)
        except ResolveError as e:
            logger.error(f"[resolve] [{session_id}] ❌ {e.code.value}: {e.message}")
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[resolve] [{session_id}] ❌ Unexpected failure for {safe_url}")
            raise ResolveError(f"Resolution failed: {e}") from e

        result.timings.total = deadline.elapsed_ms()
        logger.info(
            f"[resolve] [{session_id}] ✅ Done in {result.timings.total:.0f}ms: "
            f"{len(result.manifests)} manifests from {len(result.raw_findings)} candidates "
            f"(pipeline={result.pipeline})"
        )
        return result

    async def _use_anti_devtool(self, url: str, options: ResolveOptions, session_id: str) -> bool:
        if options.force_anti_devtool:
            logger.info(f"[resolve] [{session_id}] Anti-devtool pipeline forced by caller")
            return True
        if not self.settings.anti_devtool_enabled:
            return False
        detection = await self.anti_devtool_detector.detect(url)
        if detection.detected:
            logger.info(
                f"[resolve] [{session_id}] 🛡️ Anti-devtool protection detected "
                f"({detection.method}, {detection.confidence}): {detection.patterns}"
            )
        return detection.detected

    async def _resolve_standard(
        self,
        url: str,
        options: ResolveOptions,
        session_id: str,
        deadline: Deadline,
    ) -> ResolutionResult:
        lease = await self.pool.acquire_page(
            mobile=options.emulate_mobile,
            extra_headers=options.extra_headers,
            session_id=session_id,
            timeout=deadline.remaining(),
        )
        detector = PassiveDetector(session_id, options.m3u8_patterns, options.debug)
        try:
            async with await detector.attach(lease.page):
                report = await self.engine.run(
                    lease.page, detector, url, options, deadline, pipeline=lease.pipeline
                )
            await detector.collect_cookies(lease.context)
        finally:
            await lease.release()

        result = await self._build_result(url, session_id, detector.candidates, deadline)
        result.timings = Timings(
            navigation=report.navigation_ms,
            activation=report.activation_ms,
            detection=report.detection_ms,
        )
        result.interactions_performed = report.interactions
        result.strategy_used = report.strategy
        result.required_headers = detector.required_headers()
        result.required_cookies = detector.required_cookies()
        return result

    async def _resolve_anti_devtool(
        self,
        url: str,
        options: ResolveOptions,
        session_id: str,
        deadline: Deadline,
    ) -> ResolutionResult:
        outcome = await self.anti_devtool_resolver.run(
            url,
            session_id,
            deadline,
            user_agent=MOBILE_USER_AGENT if options.emulate_mobile else None,
            extra_headers=options.extra_headers,
            wait_until=options.wait_until,
            patterns=options.m3u8_patterns,
            nav_timeout_ms=options.nav_timeout_ms,
            debug=options.debug,
        )
        result = await self._build_result(url, session_id, outcome.candidates, deadline)
        result.pipeline = "anti-devtool"
        result.timings = Timings(
            navigation=outcome.navigation_ms,
            activation=outcome.activation_ms,
            detection=outcome.detection_ms,
        )
        result.interactions_performed = outcome.interactions
        result.strategy_used = outcome.strategy
        result.required_headers = outcome.required_headers
        result.required_cookies = outcome.required_cookies
        return result

    async def _build_result(
        self,
        url: str,
        session_id: str,
        candidates: List[Candidate],
        deadline: Deadline,
    ) -> ResolutionResult:
        processed = await asyncio.gather(
            *(self._process_candidate(c, url, session_id, deadline) for c in candidates)
        )
        manifests = [m for m in processed if m is not None]
        return ResolutionResult(
            session_id=session_id,
            page_url=url,
            manifests=manifests,
            best_guess=pick_best_guess(manifests),
            raw_findings=[RawFinding(url=c.url, content_type=c.content_type) for c in candidates],
            notes=build_notes(len(candidates), manifests),
        )

    async def _process_candidate(
        self, candidate: Candidate, page_url: str, session_id: str, deadline: Deadline
    ) -> Optional[Manifest]:
        safe_url = sanitize_url_for_logging(candidate.url)[:120]
        if deadline.expired:
            logger.warning(f"[resolve] [{session_id}] No time left to fetch {safe_url}")
            return None
        try:
            text = await asyncio.wait_for(
                self.fetcher.fetch(candidate, page_url, session_id), timeout=deadline.remaining()
            )
        except asyncio.TimeoutError:
            logger.warning(f"[resolve] [{session_id}] Fetch of {safe_url} ran past the resolve budget")
            return None
        if not text:
            return None
        try:
            parsed = parse_manifest(text, candidate.url)
        except InvalidManifest as e:
            logger.debug(
                f"[resolve] [{session_id}] Candidate {safe_url} is not a playlist: {e}"
            )
            return None
        return Manifest(
            url=candidate.url,
            master_url=normalize_url(candidate.url),
            content_type=candidate.content_type,
            source="dom" if candidate.origin == CandidateOrigin.DOM else "network",
            is_live=parsed.is_live,
            is_low_latency=parsed.is_low_latency,
            is_master=parsed.is_master,
            variants=parsed.variants,
            media_playlists=parsed.media_playlists,
            encryption=parsed.encryption,
            headers=dict(candidate.headers),
            cookies=list(candidate.cookies),
        )
