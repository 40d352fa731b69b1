"""HTTP pool indexes used to shortlist candidate pools for a token."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol
from urllib.parse import quote

import aiohttp
import orjson
from solders.pubkey import Pubkey

from .codec import WSOL_MINT
from .errors import IndexUnavailable
from .http import HTTPError, HostCircuitOpenError, HttpClient, fetch_json

logger = logging.getLogger(__name__)

DEFAULT_INDEX_TIMEOUT = 5.0
DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex"

_INDEX_ERRORS = (
    HTTPError,
    HostCircuitOpenError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    orjson.JSONDecodeError,
)


@dataclass(slots=True)
class IndexRecord:
    pool_id: Pubkey
    market_id: Optional[Pubkey] = None
    lp_mint: Optional[Pubkey] = None
    token_symbol: str = ""
    token_name: str = ""
    open_time_ms: int = 0
    timestamp: int = 0
    base_mint: Optional[Pubkey] = None
    quote_mint: Optional[Pubkey] = None
    liquidity_usd: float = 0.0


class PoolIndex(Protocol):
    async def pools_by_token(self, mint: Pubkey) -> List[IndexRecord]:
        ...


def _to_pubkey(value: Any) -> Optional[Pubkey]:
    if not value or not isinstance(value, str):
        return None
    try:
        return Pubkey.from_string(value)
    except ValueError:
        return None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _records_payload(payload: Any) -> List[Mapping[str, Any]]:
    if isinstance(payload, Mapping):
        for key in ("data", "pools", "result"):
            inner = payload.get(key)
            if isinstance(inner, list):
                return [item for item in inner if isinstance(item, Mapping)]
            if isinstance(inner, Mapping):
                return [inner]
        return [payload]
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, Mapping)]
    return []


def _record_from(entry: Mapping[str, Any]) -> Optional[IndexRecord]:
    pool_id = _to_pubkey(entry.get("poolID") or entry.get("poolId") or entry.get("id"))
    if pool_id is None:
        return None
    return IndexRecord(
        pool_id=pool_id,
        market_id=_to_pubkey(entry.get("marketID") or entry.get("marketId")),
        lp_mint=_to_pubkey(entry.get("lpMint")),
        token_symbol=str(entry.get("tokenSymbol") or ""),
        token_name=str(entry.get("tokenName") or ""),
        open_time_ms=_to_int(entry.get("openTimeMs")),
        timestamp=_to_int(entry.get("timestamp")),
        base_mint=_to_pubkey(entry.get("baseMint")),
        quote_mint=_to_pubkey(entry.get("quoteMint")),
    )


class PoolIndexClient:
    """Client for the ``getPoolsByToken``/``getBlockByToken`` index API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_INDEX_TIMEOUT,
        attempts: int = 3,
        backoff: float = 0.5,
        http: Optional[HttpClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff
        self.http = http

    async def _get(self, path: str, mint: Pubkey) -> Any:
        url = f"{self.base_url}/{path}?token={quote(str(mint))}"
        try:
            return await fetch_json(
                url,
                attempts=self.attempts,
                backoff=self.backoff,
                client=self.http,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        except _INDEX_ERRORS as exc:
            raise IndexUnavailable(f"{path} failed for {mint}: {exc}") from exc

    async def pools_by_token(self, mint: Pubkey) -> List[IndexRecord]:
        payload = await self._get("getPoolsByToken", mint)
        records = [r for r in map(_record_from, _records_payload(payload)) if r is not None]
        logger.debug("Index returned %d pool(s) for %s", len(records), mint)
        return records

    async def block_by_token(self, mint: Pubkey) -> Optional[IndexRecord]:
        payload = await self._get("getBlockByToken", mint)
        for entry in _records_payload(payload):
            record = _record_from(entry)
            if record is not None:
                return record
        return None


class DexScreenerIndex:
    """Pool index backed by the public DexScreener token endpoint."""

    def __init__(
        self,
        base_url: str = DEXSCREENER_URL,
        *,
        timeout: float = DEFAULT_INDEX_TIMEOUT,
        attempts: int = 3,
        dex_id: str = "raydium",
        chain_id: str = "solana",
        http: Optional[HttpClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self.dex_id = dex_id
        self.chain_id = chain_id
        self.http = http

    async def pools_by_token(self, mint: Pubkey) -> List[IndexRecord]:
        url = f"{self.base_url}/tokens/{mint}"
        try:
            payload = await fetch_json(
                url,
                attempts=self.attempts,
                client=self.http,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        except _INDEX_ERRORS as exc:
            raise IndexUnavailable(f"dexscreener lookup failed for {mint}: {exc}") from exc
        pairs = payload.get("pairs") if isinstance(payload, Mapping) else None
        records: List[IndexRecord] = []
        for pair in pairs or []:
            if not isinstance(pair, Mapping):
                continue
            if pair.get("dexId") != self.dex_id or pair.get("chainId") != self.chain_id:
                continue
            pool_id = _to_pubkey(pair.get("pairAddress"))
            if pool_id is None:
                continue
            base: Dict[str, Any] = pair.get("baseToken") or {}
            quote_token: Dict[str, Any] = pair.get("quoteToken") or {}
            liquidity = pair.get("liquidity") or {}
            records.append(
                IndexRecord(
                    pool_id=pool_id,
                    token_symbol=str(base.get("symbol") or ""),
                    token_name=str(base.get("name") or ""),
                    open_time_ms=_to_int(pair.get("pairCreatedAt")),
                    base_mint=_to_pubkey(base.get("address")),
                    quote_mint=_to_pubkey(quote_token.get("address")),
                    liquidity_usd=float(liquidity.get("usd") or 0.0),
                )
            )
        records.sort(
            key=lambda r: (WSOL_MINT in (r.base_mint, r.quote_mint), r.liquidity_usd),
            reverse=True,
        )
        return records


__all__ = [
    "IndexRecord",
    "PoolIndex",
    "PoolIndexClient",
    "DexScreenerIndex",
]
