"""Locate the Raydium V4 pool for a token pair and keep its state fresh."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from solana.rpc.types import MemcmpOpts
from solders.pubkey import Pubkey

from .codec import (
    BASE_MINT_OFFSET,
    POOL_ACCOUNT_SIZE,
    QUOTE_MINT_OFFSET,
    RAYDIUM_AMM_V4_PROGRAM_ID,
    account_data,
    decode_market_account,
    decode_pool_account,
)
from .errors import (
    DecodeError,
    IndexUnavailable,
    InputError,
    PoolInactive,
    PoolNotFound,
    PoolUnderLiquidity,
    SnipeError,
    with_stage,
)
from .index_client import IndexRecord, PoolIndex
from .models import CacheSource, Pool
from .pool_cache import PoolCache
from .rpc_pool import RpcEndpointPool

logger = logging.getLogger(__name__)


class PoolResolver:
    """Resolve pools through the cache, the HTTP index and on-chain reads.

    The index only shortlists pool ids; every candidate is re-read from
    chain and decoded before it is considered.
    """

    def __init__(
        self,
        rpc: RpcEndpointPool,
        cache: PoolCache,
        index: PoolIndex | None = None,
        *,
        program_id: Pubkey = RAYDIUM_AMM_V4_PROGRAM_ID,
        min_liquidity: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc = rpc
        self.cache = cache
        self.index = index
        self.program_id = program_id
        self.min_liquidity = min_liquidity
        self._clock = clock

    # ------------------------------------------------------------------
    # On-chain reads
    # ------------------------------------------------------------------

    async def _get_multiple(self, keys: Sequence[Pubkey]) -> List[Optional[bytes]]:
        resp = await self.rpc.execute(
            lambda client: client.get_multiple_accounts(list(keys), encoding="base64"),
            method="getMultipleAccounts",
        )
        values = list(resp.value or [])
        values += [None] * (len(keys) - len(values))
        return [account_data(acc) for acc in values]

    async def _complete(self, pool_id: Pubkey, raw: bytes) -> Pool:
        """Decode *raw* and load its vault balances and market accounts."""
        try:
            skeleton = decode_pool_account(raw, pool_id=pool_id, now=self._clock())
        except DecodeError as exc:
            raise with_stage(exc, "enrich")
        base_raw, quote_raw, market_raw = await self._get_multiple(
            [skeleton.base_vault, skeleton.quote_vault, skeleton.market_id]
        )
        try:
            pool = decode_pool_account(
                raw,
                pool_id=pool_id,
                base_vault_data=base_raw,
                quote_vault_data=quote_raw,
                now=self._clock(),
            )
            if market_raw is not None:
                pool.market = decode_market_account(market_raw, program_id=pool.market_program_id)
        except DecodeError as exc:
            raise with_stage(exc, "enrich")
        return pool

    async def fetch_pool(self, pool_id: Pubkey) -> Pool:
        """Read *pool_id* from chain, bypassing the cache."""
        (raw,) = await self._get_multiple([pool_id])
        if raw is None:
            raise PoolNotFound(f"pool account {pool_id} does not exist", stage="enrich")
        return await self._complete(pool_id, raw)

    async def refresh(self, pool: Pool) -> Pool:
        """Re-read the pool and vault accounts and update the cache entry."""
        raw, base_raw, quote_raw = await self._get_multiple([pool.id, pool.base_vault, pool.quote_vault])
        if raw is None:
            raise PoolNotFound(f"pool account {pool.id} disappeared", stage="refresh")
        try:
            fresh = decode_pool_account(
                raw,
                pool_id=pool.id,
                base_vault_data=base_raw,
                quote_vault_data=quote_raw,
                now=self._clock(),
            )
        except DecodeError as exc:
            raise with_stage(exc, "refresh")
        fresh.market = pool.market
        fresh.from_index = pool.from_index
        if fresh.market is None:
            fresh = await self._complete(pool.id, raw)
        self.cache.put(fresh, CacheSource.INDEX if fresh.from_index else CacheSource.ONCHAIN)
        return fresh.clone()

    async def _scan(self, offset: int, mint: Pubkey) -> List[Tuple[Pubkey, bytes]]:
        filters = [POOL_ACCOUNT_SIZE, MemcmpOpts(offset=offset, bytes=str(mint))]
        resp = await self.rpc.execute(
            lambda client: client.get_program_accounts(self.program_id, encoding="base64", filters=filters),
            method="getProgramAccounts",
        )
        return [(item.pubkey, account_data(item.account)) for item in resp.value or []]

    async def scan_onchain(self, token_a: Pubkey, token_b: Pubkey) -> List[Pool]:
        """Find pools for the pair with program account scans (slow path)."""
        logger.info("Scanning AMM program accounts for %s/%s", token_a, token_b)
        found: List[Pool] = []
        for base, quote in ((token_a, token_b), (token_b, token_a)):
            try:
                accounts = await self._scan(BASE_MINT_OFFSET, base)
            except SnipeError as exc:
                raise with_stage(exc, "scan")
            for pool_id, raw in accounts:
                if raw is None or raw[QUOTE_MINT_OFFSET:QUOTE_MINT_OFFSET + 32] != bytes(quote):
                    continue
                try:
                    found.append(await self._complete(pool_id, raw))
                except DecodeError as exc:
                    logger.debug("Skipping undecodable pool %s: %s", pool_id, exc)
        return found

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _index_records(self, mints: Iterable[Pubkey]) -> List[IndexRecord]:
        assert self.index is not None
        mints = list(mints)
        results = await asyncio.gather(
            *(self.index.pools_by_token(m) for m in mints), return_exceptions=True
        )
        records: Dict[Pubkey, IndexRecord] = {}
        failures: List[BaseException] = []
        for result in results:
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failures.append(result)
                continue
            for record in result:
                records.setdefault(record.pool_id, record)
        if failures and len(failures) == len(mints):
            first = failures[0]
            if isinstance(first, IndexUnavailable):
                raise with_stage(first, "index")
            raise first
        return list(records.values())

    async def _enrich(self, records: Sequence[IndexRecord]) -> List[Pool]:
        results = await asyncio.gather(
            *(self.fetch_pool(r.pool_id) for r in records), return_exceptions=True
        )
        pools: List[Pool] = []
        for record, result in zip(records, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.debug("Index candidate %s rejected: %s", record.pool_id, with_stage(result, "enrich"))
                continue
            result.from_index = True
            if not result.open_time_ms:
                result.open_time_ms = record.open_time_ms
            pools.append(result)
        return pools

    def _select(
        self,
        candidates: Sequence[Pool],
        accept: Callable[[Pool], bool],
    ) -> Tuple[Optional[Pool], Optional[SnipeError]]:
        best: Optional[Pool] = None
        rejection: Optional[SnipeError] = None
        for pool in candidates:
            if not accept(pool):
                continue
            if not pool.is_active:
                rejection = PoolInactive(f"pool {pool.id} is {pool.state.status.value}", stage="select")
                continue
            if min(pool.state.base_reserve, pool.state.quote_reserve) <= self.min_liquidity:
                if not isinstance(rejection, PoolInactive):
                    rejection = PoolUnderLiquidity(
                        f"pool {pool.id} reserves below {self.min_liquidity}", stage="select"
                    )
                continue
            if best is None or pool.total_reserves > best.total_reserves:
                best = pool
        return best, rejection

    def _store(self, pool: Pool) -> Pool:
        self.cache.put(pool, CacheSource.INDEX if pool.from_index else CacheSource.ONCHAIN)
        logger.info(
            "Resolved pool %s (%s/%s) reserves=%d/%d",
            pool.id,
            pool.base_mint,
            pool.quote_mint,
            pool.state.base_reserve,
            pool.state.quote_reserve,
        )
        return pool.clone()

    async def resolve(self, token_a: Pubkey, token_b: Pubkey) -> Pool:
        """Return the most liquid active pool trading *token_a* against *token_b*."""
        if token_a == token_b:
            raise InputError("token pair must contain two different mints")
        cached = self.cache.get(token_a, token_b)
        if cached is not None:
            return cached

        accept = lambda pool: pool.has_mints(token_a, token_b)  # noqa: E731
        rejection: Optional[SnipeError] = None
        index_error: Optional[BaseException] = None
        if self.index is not None:
            try:
                records = await self._index_records((token_a, token_b))
            except IndexUnavailable as exc:
                index_error = exc
                records = []
                logger.warning("Pool index unavailable, falling back to on-chain scan: %s", exc)
            wanted = {token_a, token_b}
            records = [
                r
                for r in records
                if r.base_mint is None or r.quote_mint is None or {r.base_mint, r.quote_mint} == wanted
            ]
            best, rejection = self._select(await self._enrich(records), accept)
            if best is not None:
                return self._store(best)

        scanned = await self.scan_onchain(token_a, token_b)
        best, scan_rejection = self._select(scanned, accept)
        if best is not None:
            return self._store(best)
        rejection = scan_rejection or rejection
        if rejection is not None:
            raise rejection
        raise PoolNotFound(f"no pool found for {token_a}/{token_b}", stage="select") from index_error

    async def best_pool_for(self, mint: Pubkey) -> Pool:
        """Return the most liquid active pool that trades *mint*."""
        accept = lambda pool: mint in (pool.base_mint, pool.quote_mint)  # noqa: E731
        candidates: List[Pool] = []
        if self.index is not None:
            try:
                candidates = await self._enrich(await self._index_records((mint,)))
            except IndexUnavailable as exc:
                logger.warning("Pool index unavailable for %s: %s", mint, exc)
        best, rejection = self._select(candidates, accept)
        if best is None:
            scanned: List[Pool] = []
            for offset in (BASE_MINT_OFFSET, QUOTE_MINT_OFFSET):
                for pool_id, raw in await self._scan(offset, mint):
                    if raw is None:
                        continue
                    try:
                        scanned.append(await self._complete(pool_id, raw))
                    except DecodeError as exc:
                        logger.debug("Skipping undecodable pool %s: %s", pool_id, exc)
            best, scan_rejection = self._select(scanned, accept)
            rejection = scan_rejection or rejection
        if best is None:
            raise rejection or PoolNotFound(f"no pool found for {mint}", stage="select")
        return self._store(best)


__all__ = ["PoolResolver"]
