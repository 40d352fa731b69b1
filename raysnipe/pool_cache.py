from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional

from solders.pubkey import Pubkey

from .models import CacheEntry, CacheSource, Pool

logger = logging.getLogger(__name__)

DEFAULT_TTL = 15 * 60.0
MIN_TTL = 60.0
MAX_TTL = 60 * 60.0
DEFAULT_SWEEP_INTERVAL = 5 * 60.0


def pair_key(mint_a: Pubkey, mint_b: Pubkey) -> str:
    return f"{mint_a}-{mint_b}"


class PoolCache:
    """TTL cache of resolved pools addressable by either mint ordering.

    A pool is stored once and indexed under ``"base-quote"`` and
    ``"quote-base"``, so both keys always see the same ``expire_at``.  Pools
    are cloned on the way in and on the way out.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        *,
        min_ttl: float = MIN_TTL,
        max_ttl: float = MAX_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl
        self.ttl = self._clamp(ttl)
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[Pubkey, CacheEntry] = {}
        self._keys: Dict[str, Pubkey] = {}
        self._lock = threading.RLock()
        self._sweep_task: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0

    def _clamp(self, ttl: float) -> float:
        return max(self.min_ttl, min(self.max_ttl, float(ttl)))

    def set_ttl(self, ttl: float) -> float:
        with self._lock:
            self.ttl = self._clamp(ttl)
        return self.ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, mint_a: Pubkey, mint_b: Pubkey) -> Optional[CacheEntry]:
        pool_id = self._keys.get(pair_key(mint_a, mint_b))
        if pool_id is None:
            return None
        entry = self._entries.get(pool_id)
        if entry is None or entry.expire_at < self._clock():
            return None
        return entry

    def get(self, mint_a: Pubkey, mint_b: Pubkey) -> Optional[Pool]:
        with self._lock:
            entry = self._lookup(mint_a, mint_b)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.pool.clone()

    def entry(self, mint_a: Pubkey, mint_b: Pubkey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._lookup(mint_a, mint_b)
            return entry.clone() if entry is not None else None

    def get_by_id(self, pool_id: Pubkey) -> Optional[Pool]:
        with self._lock:
            entry = self._entries.get(pool_id)
            if entry is None or entry.expire_at < self._clock():
                return None
            return entry.pool.clone()

    def put(self, pool: Pool, source: CacheSource = CacheSource.ONCHAIN) -> CacheEntry:
        now = self._clock()
        with self._lock:
            previous = self._entries.get(pool.id)
            entry = CacheEntry(
                pool=pool.clone(),
                expire_at=now + self.ttl,
                last_update=now,
                update_count=(previous.update_count + 1) if previous is not None else 1,
                source=source,
            )
            self._entries[pool.id] = entry
            self._keys[pair_key(pool.base_mint, pool.quote_mint)] = pool.id
            self._keys[pair_key(pool.quote_mint, pool.base_mint)] = pool.id
            return entry.clone()

    def invalidate(self, pool_id: Pubkey) -> bool:
        with self._lock:
            entry = self._entries.pop(pool_id, None)
            if entry is None:
                return False
            self._drop_keys(entry.pool)
            return True

    def _drop_keys(self, pool: Pool) -> None:
        for key in (pair_key(pool.base_mint, pool.quote_mint), pair_key(pool.quote_mint, pool.base_mint)):
            if self._keys.get(key) == pool.id:
                del self._keys[key]

    def sweep(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [pid for pid, entry in self._entries.items() if entry.expire_at < now]
            for pid in expired:
                self._drop_keys(self._entries.pop(pid).pool)
        if expired:
            logger.debug("Pool cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "keys": len(self._keys),
                "hits": self.hits,
                "misses": self.misses,
                "ttl": self.ttl,
            }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


__all__ = ["PoolCache", "pair_key", "DEFAULT_TTL", "MIN_TTL", "MAX_TTL"]
