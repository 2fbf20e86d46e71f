"""
HTTP surface tests: status codes and error envelopes.

TestClient does not run the lifespan (no browser); app.state is populated
with doubles. The lifespan tests swap its pool, cache and proxy manager out.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from hls_resolver import main
from hls_resolver.errors import (
    InvalidUrlError,
    NavigationTimeoutError,
    NetworkError,
    PoolSaturatedError,
    PoolShutdownError,
)
from hls_resolver.main import app
from hls_resolver.models import ResolutionResult


class FakeResolver:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def resolve(self, url, options=None):
        self.calls.append((url, options))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakePool:
    is_shutting_down = False

    def stats(self):
        return {"browser_count": 2, "active_pages": 1, "max_concurrent_pages": 8, "waiting": 0}


@pytest.fixture
def client():
    yield TestClient(app)
    for name in ("resolver", "pool"):
        if hasattr(app.state, name):
            delattr(app.state, name)


def _install(outcome):
    resolver = FakeResolver(outcome)
    app.state.resolver = resolver
    app.state.pool = FakePool()
    return resolver


# ─── /api/v1/resolve ─────────────────────────────────────────────────────────

def test_resolve_returns_result_json(client):
    result = ResolutionResult(session_id="s-1", page_url="https://example.com/watch/1")
    resolver = _install(result)

    response = client.post(
        "/api/v1/resolve",
        json={"url": "https://example.com/watch/1", "options": {"click_retries": 2}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "s-1"
    assert body["manifests"] == []
    assert body["pipeline"] == "standard"
    url, options = resolver.calls[0]
    assert url == "https://example.com/watch/1"
    assert options.click_retries == 2


@pytest.mark.parametrize(
    "error, status, code, transient",
    [
        (InvalidUrlError("Invalid URL: x"), 400, "INVALID_URL", False),
        (NavigationTimeoutError("Navigation timeout"), 504, "NAVIGATION_TIMEOUT", True),
        (NetworkError("net::ERR_NAME_NOT_RESOLVED"), 502, "NETWORK_ERROR", True),
        (PoolShutdownError("Browser pool is shutting down"), 503, "SERVICE_UNAVAILABLE", True),
        (PoolSaturatedError("Timed out after 30.0s waiting for a browser page"), 503, "SERVICE_UNAVAILABLE", True),
    ],
)
def test_resolve_errors_map_to_status_and_envelope(client, error, status, code, transient):
    _install(error)

    response = client.post("/api/v1/resolve", json={"url": "https://example.com/watch/1"})

    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert body["error"]["is_transient"] is transient


def test_unexpected_error_is_a_500_envelope(client):
    _install(RuntimeError("boom"))
    response = client.post("/api/v1/resolve", json={"url": "https://example.com/watch/1"})
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "SERVER_ERROR"


def test_invalid_options_are_rejected_by_validation(client):
    _install(ResolutionResult(session_id="s", page_url="https://example.com"))
    response = client.post(
        "/api/v1/resolve",
        json={"url": "https://example.com", "options": {"click_retries": 99}},
    )
    assert response.status_code == 422


def test_resolve_without_resolver_is_unavailable(client):
    response = client.post("/api/v1/resolve", json={"url": "https://example.com/watch/1"})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


# ─── /api/v1/health and / ────────────────────────────────────────────────────

def test_health_reports_pool_occupancy(client):
    _install(ResolutionResult(session_id="s", page_url="https://example.com"))
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["stats"]["pool"] == {
        "browser_count": 2,
        "active_pages": 1,
        "max_concurrent_pages": 8,
        "waiting": 0,
    }


def test_health_without_pool_is_degraded(client):
    response = client.get("/api/v1/health")
    assert response.json()["status"] == "degraded"
    assert response.json()["stats"]["pool"] is None


def test_root_lists_endpoints(client):
    body = client.get("/").json()
    assert body["endpoints"]["resolve"] == "/api/v1/resolve"


# ─── Lifespan ────────────────────────────────────────────────────────────────

class LifespanProxyManager:
    proxy_count = 0

    def __init__(self):
        self.loop_cancelled = False

    async def refresh(self):
        pass

    async def auto_refresh_loop(self):
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.loop_cancelled = True
            raise

    def get_proxy_url(self):
        return None


class LifespanCache:
    async def initialize(self):
        pass


class LifespanPool:
    fail_on_start = False

    def __init__(self, settings, proxy_provider=None):
        self.shut_down = False

    async def initialize(self):
        await asyncio.sleep(0)
        if self.fail_on_start:
            raise RuntimeError("no browser binary")

    async def shutdown(self):
        self.shut_down = True


@pytest.fixture
def lifespan_doubles(monkeypatch):
    proxy_manager = LifespanProxyManager()
    pools = []

    def make_pool(settings, proxy_provider=None):
        pool = LifespanPool(settings, proxy_provider)
        pools.append(pool)
        return pool

    monkeypatch.setattr(main, "ProxyManager", lambda: proxy_manager)
    monkeypatch.setattr(main, "create_strategy_cache", lambda *args: LifespanCache())
    monkeypatch.setattr(main, "BrowserPool", make_pool)
    yield proxy_manager, pools
    for name in ("resolver", "pool"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.mark.asyncio
async def test_lifespan_awaits_refresh_task_and_shuts_pool_down(lifespan_doubles):
    proxy_manager, pools = lifespan_doubles

    async with main.lifespan(app):
        await asyncio.sleep(0)
        assert app.state.pool is pools[0]
        assert app.state.resolver is not None

    assert proxy_manager.loop_cancelled, "The refresh loop is cancelled and awaited on shutdown"
    assert pools[0].shut_down


@pytest.mark.asyncio
async def test_lifespan_startup_failure_still_stops_refresh_task(lifespan_doubles, monkeypatch):
    proxy_manager, pools = lifespan_doubles
    monkeypatch.setattr(LifespanPool, "fail_on_start", True)

    with pytest.raises(RuntimeError, match="no browser binary"):
        async with main.lifespan(app):
            pass

    assert proxy_manager.loop_cancelled
    assert pools[0].shut_down
