"""
Pydantic models for request/response schemas and resolution internals
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Error code classifications"""
    INVALID_URL = "INVALID_URL"
    DOMAIN_NOT_ALLOWED = "DOMAIN_NOT_ALLOWED"
    NAVIGATION_ERROR = "NAVIGATION_ERROR"
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SERVER_ERROR = "SERVER_ERROR"


class StrategyName(str, Enum):
    """Page interactions the activation engine knows how to perform"""
    NONE = "none"
    CENTER_CLICK_ONCE = "center-click-once"
    CENTER_CLICK_DOUBLE = "center-click-double"
    OVERLAY_CLOSE = "overlay-close"
    PLAY_ELEMENTS = "play-elements"
    IFRAME_CLICK = "iframe-click"


class CandidateOrigin(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    DOM = "dom"


# ── Request ───────────────────────────────────────────────────────────────────

class ResolveOptions(BaseModel):
    """Per-call knobs for resolve()"""
    timeout_ms: Optional[int] = Field(None, gt=0, description="End-to-end budget for the resolution")
    nav_timeout_ms: Optional[int] = Field(None, gt=0, description="Navigation timeout (capped by timeout_ms)")
    click_retries: int = Field(1, ge=0, le=5, description="Values above 1 enable the double center click")
    emulate_mobile: bool = Field(False, description="Use a phone viewport and user agent")
    extra_headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers for the page")
    wait_until: str = Field("domcontentloaded", description="commit, domcontentloaded, load or networkidle")
    m3u8_patterns: List[str] = Field(default_factory=list, description="Extra regexes that mark a URL as a manifest")
    debug: bool = Field(False, description="Verbose per-request logging for this resolution")
    force_anti_devtool: bool = Field(False, description="Skip detection and use the anti-devtool pipeline")


class ResolveRequest(BaseModel):
    """Request schema for /api/v1/resolve"""
    url: str = Field(..., description="Page that loads a video player")
    options: Optional[ResolveOptions] = None

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com/watch/123",
                "options": {
                    "timeout_ms": 30000,
                    "click_retries": 2,
                    "wait_until": "domcontentloaded",
                },
            }
        }


# ── Manifest parsing ──────────────────────────────────────────────────────────

class Resolution(BaseModel):
    width: int
    height: int


class StreamVariant(BaseModel):
    uri: str
    bandwidth: Optional[int] = None
    codecs: Optional[str] = None
    resolution: Optional[Resolution] = None
    frame_rate: Optional[float] = None


class StreamEncryption(BaseModel):
    method: str = Field(..., description="AES-128, SAMPLE-AES or NONE")
    key_uri: Optional[str] = None


class ParsedManifest(BaseModel):
    is_live: bool = True
    is_low_latency: bool = False
    variants: List[StreamVariant] = Field(default_factory=list)
    media_playlists: List[str] = Field(default_factory=list)
    encryption: Optional[StreamEncryption] = None

    @property
    def is_master(self) -> bool:
        return bool(self.variants)


# ── Detection internals ───────────────────────────────────────────────────────

class Cookie(BaseModel):
    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[int] = None
    http_only: Optional[bool] = None
    secure: Optional[bool] = None


@dataclass
class Candidate:
    """
    A URL that plausibly points at a manifest.

    Later observations only fill fields that are still empty; headers are
    merge-only, a key that is already set keeps its first value.
    """
    url: str
    origin: CandidateOrigin
    content_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: List[Cookie] = field(default_factory=list)
    status: Optional[int] = None
    first_seen_at: float = field(default_factory=time.time)

    def merge(
        self,
        content_type: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        status: Optional[int] = None,
    ) -> None:
        if content_type and not self.content_type:
            self.content_type = content_type
        if status is not None and self.status is None:
            self.status = status
        for key, value in (headers or {}).items():
            self.headers.setdefault(key, value)


class ActivationStrategy(BaseModel):
    name: StrategyName
    selector: Optional[str] = None
    timeout_ms: int = 0


# ── Response ──────────────────────────────────────────────────────────────────

class Timings(BaseModel):
    navigation: float = 0.0
    activation: float = 0.0
    detection: float = 0.0
    total: float = 0.0


class Manifest(BaseModel):
    """One candidate that fetched and parsed as a playlist"""
    url: str
    master_url: str
    content_type: Optional[str] = None
    source: str = "network"
    is_live: bool = True
    is_low_latency: bool = False
    is_master: bool = False
    variants: List[StreamVariant] = Field(default_factory=list)
    media_playlists: List[str] = Field(default_factory=list)
    encryption: Optional[StreamEncryption] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: List[Cookie] = Field(default_factory=list)


class RawFinding(BaseModel):
    url: str
    content_type: Optional[str] = None


class ResolutionResult(BaseModel):
    """Success response for /api/v1/resolve (manifests may be empty)"""
    session_id: str
    page_url: str
    pipeline: str = "standard"
    manifests: List[Manifest] = Field(default_factory=list)
    best_guess: Optional[int] = None
    timings: Timings = Field(default_factory=Timings)
    interactions_performed: int = 0
    strategy_used: Optional[ActivationStrategy] = None
    required_headers: Dict[str, str] = Field(default_factory=dict)
    required_cookies: List[Cookie] = Field(default_factory=list)
    raw_findings: List[RawFinding] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    """Error details"""
    code: ErrorCode
    message: str
    is_transient: bool = Field(..., description="True if retry might succeed, False if permanent")
    retry_after_seconds: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error response for failed resolutions"""
    success: bool = False
    error: ErrorDetail


class PoolStats(BaseModel):
    browser_count: int
    active_pages: int
    max_concurrent_pages: int
    waiting: int


class HealthStats(BaseModel):
    """Statistics for health check"""
    total_resolves: int
    active_resolves: int
    failed_resolves: int
    pool: Optional[PoolStats] = None


class HealthResponse(BaseModel):
    """Response schema for /api/v1/health"""
    status: str
    version: str
    uptime_seconds: float
    stats: HealthStats
