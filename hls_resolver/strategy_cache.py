"""
Per-domain memory of the activation strategy that last worked.

Entries are hints: a stale or wrong entry only changes the order in which the
activation engine tries its steps. Storage problems are logged, never raised
into a resolution.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from .models import ActivationStrategy

logger = logging.getLogger(__name__)


class StrategyCache(Protocol):
    async def initialize(self) -> None: ...

    async def get(self, domain: str) -> Optional[ActivationStrategy]: ...

    async def set(self, domain: str, strategy: ActivationStrategy) -> None: ...


class InMemoryStrategyCache:
    """Process-lifetime dict cache."""

    def __init__(self) -> None:
        self._entries: Dict[str, ActivationStrategy] = {}

    async def initialize(self) -> None:
        logger.info("[strategy-cache] In-memory strategy cache ready")

    async def get(self, domain: str) -> Optional[ActivationStrategy]:
        strategy = self._entries.get(domain)
        if strategy is not None:
            logger.debug(f"[strategy-cache] Hit {domain}: {strategy.name.value}")
        return strategy

    async def set(self, domain: str, strategy: ActivationStrategy) -> None:
        self._entries[domain] = strategy
        logger.debug(f"[strategy-cache] Stored {domain}: {strategy.name.value}")

    def __len__(self) -> int:
        return len(self._entries)


class JsonStrategyCache(InMemoryStrategyCache):
    """
    In-memory cache mirrored to a JSON file.

    The file is loaded once by initialize() and rewritten as a whole on every
    set() through a temp file + os.replace, so a crash mid-write never leaves
    a truncated cache behind.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info(f"[strategy-cache] {self.path} not found, starting empty")
            return
        except (OSError, ValueError) as e:
            logger.error(f"[strategy-cache] Failed to load {self.path}: {e}")
            return

        for domain, value in (raw or {}).items():
            try:
                self._entries[domain] = ActivationStrategy.model_validate(value)
            except ValueError as e:
                logger.warning(f"[strategy-cache] Skipping bad entry for {domain}: {e}")
        logger.info(f"[strategy-cache] Loaded {len(self._entries)} entries from {self.path}")

    async def set(self, domain: str, strategy: ActivationStrategy) -> None:
        await super().set(domain, strategy)
        async with self._lock:
            snapshot = {d: s.model_dump(mode="json") for d, s in self._entries.items()}
            try:
                await asyncio.get_event_loop().run_in_executor(None, self._write, snapshot)
            except OSError as e:
                logger.error(f"[strategy-cache] Failed to persist {self.path}: {e}")

    def _write(self, snapshot: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


def create_strategy_cache(kind: str = "memory", path: Optional[Path] = None) -> StrategyCache:
    kind = (kind or "memory").lower()
    logger.info(f"[strategy-cache] Creating {kind} strategy cache")
    if kind == "json":
        return JsonStrategyCache(path or Path("strategy-cache.json"))
    if kind != "memory":
        logger.warning(f"[strategy-cache] Unknown cache type {kind!r}, using memory")
    return InMemoryStrategyCache()
