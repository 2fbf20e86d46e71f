"""
FastAPI HLS Resolver Service
Resolves video pages to their HLS manifests with a pooled headless browser
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .browser_pool import BrowserPool
from .config import LOG_LEVEL, Settings
from .errors import ResolveError
from .manifest_fetcher import ManifestFetcher
from .models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    HealthStats,
    PoolStats,
    ResolutionResult,
    ResolveRequest,
)
from .proxy_manager import ProxyManager
from .resolver import HLSResolver
from .strategy_cache import create_strategy_cache

# Logging configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# App metadata
VERSION = "1.0.0"
start_time = time.time()

# Statistics tracking
stats = {
    "total_resolves": 0,
    "active_resolves": 0,
    "failed_resolves": 0,
}

STATUS_BY_CODE = {
    ErrorCode.INVALID_URL: 400,
    ErrorCode.DOMAIN_NOT_ALLOWED: 400,
    ErrorCode.NAVIGATION_TIMEOUT: 504,
    ErrorCode.NAVIGATION_ERROR: 502,
    ErrorCode.NETWORK_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for startup/shutdown tasks"""
    # Startup
    logger.info("🚀 Starting HLS resolver service...")
    logger.info(f"Version: {VERSION}")

    settings = Settings()
    strategy_cache = create_strategy_cache(settings.strategy_cache_type, settings.strategy_cache_path)
    await strategy_cache.initialize()

    proxy_manager = ProxyManager()
    await proxy_manager.refresh()
    refresh_task = asyncio.create_task(proxy_manager.auto_refresh_loop())

    pool = BrowserPool(settings, proxy_provider=proxy_manager)
    try:
        await pool.initialize()

        fetcher = ManifestFetcher(
            settings.user_agent,
            settings.m3u8_download_timeout_ms,
            proxy_url=proxy_manager.get_proxy_url(),
        )
        app.state.pool = pool
        app.state.resolver = HLSResolver(settings, pool, strategy_cache, fetcher=fetcher)
        logger.info(f"🌐 Proxies: {proxy_manager.proxy_count} loaded")

        yield
    finally:
        # Shutdown
        logger.info("Shutting down HLS resolver service...")
        refresh_task.cancel()
        try:
            await refresh_task
        except asyncio.CancelledError:
            pass
        await pool.shutdown()


# Create FastAPI app
app = FastAPI(
    title="HLS Resolver Service",
    description="Finds the HLS manifests a video page loads, with the headers and cookies needed to fetch them",
    version=VERSION,
    lifespan=lifespan,
)

# CORS configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(detail.code, 500),
        content=ErrorResponse(error=detail).model_dump(mode='json')
    )


# ============================================================================
# API ENDPOINTS
# ============================================================================


@app.post("/api/v1/resolve", response_model=ResolutionResult)
async def resolve_stream(body: ResolveRequest, request: Request) -> Response:
    """
    Resolve a video page to its HLS manifests

    **Flow:**
    1. Validate URL and allowlist
    2. Lease a browser page, navigate and activate the player if needed
    3. Fetch and parse every detected playlist
    4. Return manifests, best guess, replay headers and cookies
    """
    resolver = getattr(request.app.state, "resolver", None)
    if resolver is None:
        return error_response(ErrorDetail(
            code=ErrorCode.SERVICE_UNAVAILABLE,
            message="Resolver is not initialized",
            is_transient=True,
            retry_after_seconds=5,
        ))

    logger.info(f"📥 Resolve request: {body.url}")
    stats["active_resolves"] += 1

    try:
        result = await resolver.resolve(body.url, body.options)
        stats["total_resolves"] += 1
        logger.info(f"✅ Resolved {len(result.manifests)} manifests (session={result.session_id})")
        return JSONResponse(content=result.model_dump(mode='json'))

    except ResolveError as e:
        stats["failed_resolves"] += 1
        logger.error(f"❌ Resolve failed: {e.code.value}: {e.message}")
        return error_response(e.to_detail())

    except Exception as e:
        stats["failed_resolves"] += 1
        logger.exception(f"💥 Unexpected error during resolve: {e}")
        return error_response(ErrorDetail(
            code=ErrorCode.SERVER_ERROR,
            message=f"Internal server error: {str(e)}",
            is_transient=True,
            retry_after_seconds=30,
        ))
    finally:
        stats["active_resolves"] -= 1


@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint for monitoring

    **Metrics:**
    - Service status and uptime
    - Resolve statistics
    - Browser pool occupancy
    """
    pool = getattr(request.app.state, "pool", None)
    pool_stats = PoolStats(**pool.stats()) if pool is not None else None
    status = "healthy"
    if pool is None or pool.is_shutting_down:
        status = "degraded"

    return HealthResponse(
        status=status,
        version=VERSION,
        uptime_seconds=time.time() - start_time,
        stats=HealthStats(
            total_resolves=stats["total_resolves"],
            active_resolves=stats["active_resolves"],
            failed_resolves=stats["failed_resolves"],
            pool=pool_stats,
        ),
    )


@app.get("/")
async def root():
    """Root endpoint with service info"""
    return {
        "service": "HLS Resolver Service",
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "resolve": "/api/v1/resolve",
            "health": "/api/v1/health",
        },
        "docs": "/docs",
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler"""
    return JSONResponse(
        status_code=404,
        content={"detail": "Endpoint not found. See /docs for API documentation."}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
