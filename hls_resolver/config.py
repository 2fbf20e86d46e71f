"""
Environment configuration for the HLS resolver.

Every knob comes from an environment variable with a sane default. Settings()
snapshots the environment at construction time, so the service builds one at
startup and tests build their own with explicit values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/16.0 Mobile/15E148 Safari/604.1"
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-blink-features=AutomationControlled",
]


def _env(factory, name, default):
    return field(default_factory=lambda: factory(name, default))


@dataclass(frozen=True)
class Settings:
    """Resolved configuration handed to the pool, engine and resolver."""

    # Browser pool
    browser_pool_size: int = _env(_env_int, "BROWSER_POOL_SIZE", 2)
    max_concurrent_pages: int = _env(_env_int, "MAX_CONCURRENT_PAGES", 5)
    headless: bool = _env(_env_bool, "BROWSER_HEADLESS", True)
    user_agent: str = _env(os.getenv, "USER_AGENT", DEFAULT_USER_AGENT)
    pool_shutdown_grace_seconds: int = _env(_env_int, "POOL_SHUTDOWN_GRACE_SECONDS", 10)
    launch_args: List[str] = field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))

    # Timeouts (milliseconds, playwright convention)
    nav_timeout_ms: int = _env(_env_int, "NAV_TIMEOUT_MS", 30_000)
    default_timeout_ms: int = _env(_env_int, "DEFAULT_TIMEOUT_MS", 15_000)
    resolve_timeout_ms: int = _env(_env_int, "RESOLVE_TIMEOUT_MS", 45_000)
    immediate_check_ms: int = _env(_env_int, "IMMEDIATE_CHECK_MS", 2_500)
    settle_wait_ms: int = _env(_env_int, "SETTLE_WAIT_MS", 1_500)
    step_timeout_ms: int = _env(_env_int, "STEP_TIMEOUT_MS", 4_000)
    step_recheck_ms: int = _env(_env_int, "STEP_RECHECK_MS", 2_500)
    m3u8_download_timeout_ms: int = _env(_env_int, "M3U8_DOWNLOAD_TIMEOUT_MS", 10_000)

    # Strategy cache: "memory" or "json"
    strategy_cache_type: str = _env(os.getenv, "STRATEGY_CACHE_TYPE", "memory")
    strategy_cache_path: Path = field(
        default_factory=lambda: Path(os.getenv("STRATEGY_CACHE_PATH", "strategy-cache.json"))
    )

    # Empty allowlist allows every host
    allowlist_hosts: Tuple[str, ...] = field(default_factory=lambda: _env_list("ALLOWLIST_HOSTS"))

    # Anti-devtool pipeline
    anti_devtool_enabled: bool = _env(_env_bool, "ANTI_DEVTOOL_ENABLED", True)
    anti_devtool_domains: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("ANTI_DEVTOOL_DOMAINS")
    )
    anti_devtool_auto_detect: bool = _env(_env_bool, "ANTI_DEVTOOL_AUTO_DETECT", True)
    anti_devtool_settle_ms: int = _env(_env_int, "ANTI_DEVTOOL_SETTLE_MS", 3_000)
    anti_devtool_wait_after_click_ms: int = _env(_env_int, "ANTI_DEVTOOL_WAIT_AFTER_CLICK_MS", 8_000)

    # Optional filter-list rule in the interception pipeline
    adblock_enabled: bool = _env(_env_bool, "ADBLOCK_ENABLED", False)
    adblock_filter_path: str = _env(os.getenv, "ADBLOCK_FILTER_PATH", "")
