"""
Passive manifest detection.

A PassiveDetector is created per resolution. attach(page) subscribes it to:

  - page "request"/"response" events (main frame and in-process frames)
  - a CDP Network session on the page target
  - a CDP Network session on every frame attached later; only out-of-process
    frames accept one, in-process frames are already covered by page events

The returned DetectorSubscription removes every listener and detaches every
CDP session on close(), whatever state the page is in.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .classifier import compile_patterns, is_candidate, is_success_status, relevant_headers
from .models import Candidate, CandidateOrigin, Cookie
from .url_utils import host_matches_cookie_domain, sanitize_url_for_logging

logger = logging.getLogger(__name__)


def _lower_keys(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        out[str(key).lower()] = ", ".join(value) if isinstance(value, list) else str(value)
    return out


class PassiveDetector:
    """Candidate store fed by network observations of one resolution."""

    def __init__(
        self,
        session_id: str = "",
        patterns: Iterable[str] = (),
        debug: bool = False,
    ) -> None:
        self.session_id = session_id
        self.debug = debug
        self._patterns = compile_patterns(patterns)
        self._candidates: Dict[str, Candidate] = {}
        self._headers: Dict[str, str] = {}
        self._cookies: List[Cookie] = []
        self._found = asyncio.Event()

    # ── Observations ──────────────────────────────────────────────────────────

    def observe_request(self, url: str, headers: Optional[Dict[str, Any]] = None) -> Optional[Candidate]:
        """Request-time observation: captures replay headers before the response exists."""
        wanted = relevant_headers(_lower_keys(headers))
        for key, value in wanted.items():
            self._headers.setdefault(key, value)
        if not is_candidate(url, None, self._patterns):
            return None
        return self._add(url, CandidateOrigin.REQUEST, headers=wanted)

    def observe_response(
        self,
        url: str,
        status: Optional[int],
        headers: Optional[Dict[str, Any]] = None,
    ) -> Optional[Candidate]:
        """Response-time observation: fills status and content type."""
        content_type = _lower_keys(headers).get("content-type")
        if not is_success_status(status):
            existing = self._candidates.get(url)
            if existing is not None:
                existing.merge(status=status)
            return None
        if not is_candidate(url, content_type, self._patterns):
            return None
        return self._add(url, CandidateOrigin.RESPONSE, content_type=content_type, status=status)

    def add_candidate(self, url: str, origin: CandidateOrigin, content_type: Optional[str] = None) -> Candidate:
        return self._add(url, origin, content_type=content_type)

    def _add(
        self,
        url: str,
        origin: CandidateOrigin,
        content_type: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        status: Optional[int] = None,
    ) -> Candidate:
        candidate = self._candidates.get(url)
        if candidate is None:
            candidate = Candidate(url=url, origin=origin)
            self._candidates[url] = candidate
            logger.info(
                f"[detector] [{self.session_id}] Candidate #{len(self._candidates)} "
                f"({origin.value}): {sanitize_url_for_logging(url)[:120]}"
            )
            self._found.set()
        candidate.merge(content_type=content_type, headers=headers, status=status)
        return candidate

    # ── Playwright / CDP handlers ─────────────────────────────────────────────

    def _on_request(self, request: Any) -> None:
        try:
            self.observe_request(request.url, request.headers)
        except Exception as e:
            logger.debug(f"[detector] [{self.session_id}] Request handler error: {e}")

    def _on_response(self, response: Any) -> None:
        try:
            if self.debug:
                logger.info(
                    f"[detector] [{self.session_id}] {response.status} "
                    f"{sanitize_url_for_logging(response.url)[:120]}"
                )
            self.observe_response(response.url, response.status, response.headers)
        except Exception as e:
            logger.debug(f"[detector] [{self.session_id}] Response handler error: {e}")

    def _on_cdp_request(self, params: Dict[str, Any]) -> None:
        request = params.get("request") or {}
        if request.get("url"):
            self.observe_request(request["url"], request.get("headers"))

    def _on_cdp_response(self, params: Dict[str, Any]) -> None:
        response = params.get("response") or {}
        if not response.get("url"):
            return
        headers = _lower_keys(response.get("headers"))
        if "content-type" not in headers and response.get("mimeType"):
            headers["content-type"] = response["mimeType"]
        self.observe_response(response["url"], response.get("status"), headers)

    async def attach(self, page: Any) -> "DetectorSubscription":
        """Subscribe to page events and open the page CDP session."""
        subscription = DetectorSubscription(self, page)
        await subscription.start()
        return subscription

    # ── Queries ───────────────────────────────────────────────────────────────

    @property
    def candidates(self) -> List[Candidate]:
        return list(self._candidates.values())

    def has_candidates(self) -> bool:
        return bool(self._candidates)

    async def wait_for_candidate(self, timeout: float) -> bool:
        """True as soon as at least one candidate exists; False after timeout seconds."""
        if self._candidates:
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._found.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return bool(self._candidates)

    def required_headers(self) -> Dict[str, str]:
        return dict(self._headers)

    def required_cookies(self) -> List[Cookie]:
        return list(self._cookies)

    async def collect_cookies(self, context: Any) -> List[Cookie]:
        """
        Harvest the context cookies once and attach to every candidate the
        cookies whose domain suffix-matches the candidate host.
        """
        try:
            raw = await context.cookies()
        except Exception as e:
            logger.warning(f"[detector] [{self.session_id}] Cookie harvest failed: {e}")
            return []

        cookies: List[Cookie] = []
        for item in raw:
            expires = item.get("expires")
            cookies.append(Cookie(
                name=item.get("name", ""),
                value=item.get("value", ""),
                domain=item.get("domain"),
                path=item.get("path"),
                expires=int(expires) if expires is not None and expires >= 0 else None,
                http_only=item.get("httpOnly"),
                secure=item.get("secure"),
            ))
        self._cookies = cookies

        for candidate in self._candidates.values():
            try:
                host = urlsplit(candidate.url).hostname or ""
            except ValueError:
                host = ""
            candidate.cookies = [c for c in cookies if host_matches_cookie_domain(host, c.domain or "")]

        logger.debug(f"[detector] [{self.session_id}] Collected {len(cookies)} cookies")
        return cookies


class DetectorSubscription:
    """Scoped set of page listeners and CDP sessions; close() is idempotent."""

    def __init__(self, detector: PassiveDetector, page: Any) -> None:
        self.detector = detector
        self.page = page
        self._listeners: List[Tuple[str, Callable[..., Any]]] = []
        self._sessions: List[Any] = []
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        self._listen("request", self.detector._on_request)
        self._listen("response", self.detector._on_response)
        self._listen("frameattached", self._on_frame_attached)
        await self._open_cdp(self.page, "page")

    def _listen(self, event: str, handler: Callable[..., Any]) -> None:
        self.page.on(event, handler)
        self._listeners.append((event, handler))

    def _on_frame_attached(self, frame: Any) -> None:
        if self._closed:
            return
        task = asyncio.ensure_future(self._open_cdp(frame, "frame"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _open_cdp(self, target: Any, kind: str) -> None:
        try:
            session = await self.page.context.new_cdp_session(target)
        except Exception as e:
            # in-process frames share the page session
            logger.debug(f"[detector] [{self.detector.session_id}] No CDP session for {kind}: {e}")
            return
        if self._closed:
            await self._detach(session)
            return
        self._sessions.append(session)
        try:
            session.on("Network.requestWillBeSent", self.detector._on_cdp_request)
            session.on("Network.responseReceived", self.detector._on_cdp_response)
            await session.send("Network.enable")
            logger.debug(f"[detector] [{self.detector.session_id}] CDP Network listener attached ({kind})")
        except Exception as e:
            logger.debug(f"[detector] [{self.detector.session_id}] CDP Network.enable failed ({kind}): {e}")

    async def _detach(self, session: Any) -> None:
        try:
            await session.detach()
        except Exception as e:
            logger.debug(f"[detector] [{self.detector.session_id}] CDP detach failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        for event, handler in self._listeners:
            try:
                self.page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"[detector] [{self.detector.session_id}] remove_listener({event}) failed: {e}")
        self._listeners.clear()
        for session in self._sessions:
            await self._detach(session)
        self._sessions.clear()

    async def __aenter__(self) -> "DetectorSubscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
