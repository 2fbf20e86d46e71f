"""
Unit tests for the browser pool: admission bound, FIFO hand-off, browser
replacement and shutdown.
"""

import asyncio

import pytest

from conftest import FakeLauncher, fast_settings
from hls_resolver.browser_pool import BrowserPool, MOBILE_VIEWPORT
from hls_resolver.config import MOBILE_USER_AGENT
from hls_resolver.errors import PoolSaturatedError, PoolShutdownError, ResolveError


async def _pool(launcher, **overrides):
    pool = BrowserPool(fast_settings(**overrides), launcher=launcher)
    await pool.initialize()
    return pool


# ─── Lifecycle ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initialize_launches_n_browsers(launcher):
    pool = await _pool(launcher, browser_pool_size=3)
    assert len(launcher.browsers) == 3
    assert pool.stats()["browser_count"] == 3
    await pool.initialize()
    assert len(launcher.browsers) == 3, "initialize() is idempotent"
    await pool.shutdown()


@pytest.mark.asyncio
async def test_lease_gets_fresh_context_with_pipeline(launcher):
    pool = await _pool(launcher)
    lease = await pool.acquire_page(session_id="s1")

    context = launcher.browsers[0].contexts[0]
    assert lease.context is context
    assert context.routes and context.routes[0][0] == "**/*", "Pipeline must be routed before first navigation"
    assert context.routes[0][1] == lease.pipeline.handle_route
    assert context.options["service_workers"] == "block"
    assert context.navigation_timeout == 2_000

    await lease.release()
    assert context.closed, "Releasing a lease closes its context"
    assert pool.active_pages == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_mobile_context_options_and_proxy(launcher):
    class StaticProxies:
        def get_playwright_proxy(self):
            return {"server": "http://10.0.0.1:3128"}

    pool = BrowserPool(fast_settings(), proxy_provider=StaticProxies(), launcher=launcher)
    await pool.initialize()
    async with await pool.acquire_page(mobile=True, extra_headers={"X-Test": "1"}):
        options = launcher.browsers[0].contexts[0].options
        assert options["viewport"] == MOBILE_VIEWPORT
        assert options["user_agent"] == MOBILE_USER_AGENT
        assert options["is_mobile"] is True and options["has_touch"] is True
        assert options["extra_http_headers"] == {"X-Test": "1"}
        assert options["proxy"] == {"server": "http://10.0.0.1:3128"}
    await pool.shutdown()


@pytest.mark.asyncio
async def test_release_is_idempotent(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    lease = await pool.acquire_page()
    await lease.release()
    await lease.release()
    assert pool.stats()["active_pages"] == 0
    # the single slot is free exactly once
    second = await asyncio.wait_for(pool.acquire_page(), timeout=0.5)
    await second.release()
    await pool.shutdown()


# ─── Admission ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_never_more_than_m_outstanding_leases(launcher):
    pool = await _pool(launcher, browser_pool_size=2, max_concurrent_pages=3)
    outstanding = 0
    peak = 0

    async def worker(i):
        nonlocal outstanding, peak
        lease = await pool.acquire_page(session_id=str(i))
        outstanding += 1
        peak = max(peak, outstanding)
        await asyncio.sleep(0.005 * (i % 4))
        outstanding -= 1
        await lease.release()

    await asyncio.gather(*(worker(i) for i in range(25)))

    assert peak <= 3, f"Pool exceeded its bound: {peak} concurrent leases"
    assert peak == 3, "Under sustained load the pool should reach its bound"
    assert pool.stats() == {"browser_count": 2, "active_pages": 0, "max_concurrent_pages": 3, "waiting": 0}
    await pool.shutdown()


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    holder = await pool.acquire_page()
    order = []

    async def waiter(name):
        lease = await pool.acquire_page(session_id=name)
        order.append(name)
        await lease.release()

    tasks = [asyncio.ensure_future(waiter(n)) for n in ("a", "b", "c")]
    await asyncio.sleep(0.01)
    assert pool.stats()["waiting"] == 3

    await holder.release()
    await asyncio.gather(*tasks)
    assert order == ["a", "b", "c"]
    await pool.shutdown()


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    holder = await pool.acquire_page()

    task = asyncio.ensure_future(pool.acquire_page())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert pool.stats()["waiting"] == 0

    await holder.release()
    lease = await asyncio.wait_for(pool.acquire_page(), timeout=0.5)
    await lease.release()
    await pool.shutdown()


@pytest.mark.asyncio
async def test_admission_wait_is_bounded_by_timeout(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    holder = await pool.acquire_page()

    with pytest.raises(PoolSaturatedError) as excinfo:
        await pool.acquire_page(timeout=0.05)
    assert excinfo.value.is_transient
    assert pool.stats()["waiting"] == 0, "A timed-out waiter leaves the queue"

    await holder.release()
    lease = await asyncio.wait_for(pool.acquire_page(timeout=0.5), timeout=1)
    assert pool.stats()["active_pages"] == 1
    await lease.release()
    await pool.shutdown()


@pytest.mark.asyncio
async def test_failed_context_creation_returns_the_slot(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    browser = launcher.browsers[0]

    async def broken_new_context(**options):
        raise RuntimeError("Target closed")

    original = browser.new_context
    browser.new_context = broken_new_context
    with pytest.raises(RuntimeError):
        await pool.acquire_page()

    browser.new_context = original
    lease = await asyncio.wait_for(pool.acquire_page(), timeout=0.5)
    await lease.release()
    await pool.shutdown()


# ─── Browser replacement ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_disconnected_browser_is_replaced_transparently(launcher):
    pool = await _pool(launcher, browser_pool_size=1)
    launcher.browsers[0].connected = False

    lease = await pool.acquire_page()

    assert len(launcher.browsers) == 2, "A replacement browser must have been launched"
    assert lease.context in launcher.browsers[1].contexts
    await lease.release()
    await pool.shutdown()


@pytest.mark.asyncio
async def test_relaunch_failure_surfaces_as_resolve_error():
    calls = {"n": 0}
    launcher = FakeLauncher()

    async def flaky():
        calls["n"] += 1
        if calls["n"] > 1:
            raise RuntimeError("chromium failed to start")
        return await launcher()

    pool = BrowserPool(fast_settings(max_concurrent_pages=1), launcher=flaky)
    await pool.initialize()
    launcher.browsers[0].connected = False

    with pytest.raises(ResolveError):
        await pool.acquire_page()
    assert pool.stats()["active_pages"] == 0
    await pool.shutdown()


# ─── Shutdown ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_shutdown_fails_waiters_and_force_closes_leases(launcher):
    pool = await _pool(launcher, max_concurrent_pages=1)
    held = await pool.acquire_page()
    waiter = asyncio.ensure_future(pool.acquire_page())
    await asyncio.sleep(0.01)

    await pool.shutdown(grace_seconds=0.05)

    with pytest.raises(PoolShutdownError):
        await waiter
    assert held.released, "Leases still out after the grace period are force-released"
    assert held.context.closed
    assert all(b.closed for b in launcher.browsers)
    with pytest.raises(PoolShutdownError):
        await pool.acquire_page()
    assert pool.is_shutting_down


@pytest.mark.asyncio
async def test_shutdown_waits_for_leases_within_grace(launcher):
    pool = await _pool(launcher)
    lease = await pool.acquire_page()

    async def finish_soon():
        await asyncio.sleep(0.02)
        await lease.release()

    task = asyncio.ensure_future(finish_soon())
    await pool.shutdown(grace_seconds=1.0)
    await task
    assert lease.released
    await pool.shutdown()


@pytest.mark.asyncio
async def test_shutdown_continues_when_a_browser_close_fails(launcher):
    pool = await _pool(launcher, browser_pool_size=2)

    async def broken_close():
        raise RuntimeError("already gone")

    launcher.browsers[0].close = broken_close
    await pool.shutdown()
    assert launcher.browsers[1].closed, "One failing close must not stop the others"
