"""Plain data records shared between the trading components."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Optional

from solders.pubkey import Pubkey

ZERO_PUBKEY = Pubkey.default()


class PoolVersion(IntEnum):
    V3 = 3
    V4 = 4


class PoolStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    DISABLED = "disabled"
    ACTIVE = "active"


class SwapDirection(IntEnum):
    BASE_TO_QUOTE = 0
    QUOTE_TO_BASE = 1


class ExecutionState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"


class CacheSource(str, Enum):
    INDEX = "index"
    ONCHAIN = "onchain"


@dataclass(slots=True)
class PoolState:
    base_reserve: int = 0
    quote_reserve: int = 0
    status: PoolStatus = PoolStatus.UNINITIALIZED

    def copy(self) -> "PoolState":
        return PoolState(self.base_reserve, self.quote_reserve, self.status)


@dataclass(slots=True)
class MarketInfo:
    """Order-book accounts a V4 swap instruction must reference."""

    market_id: Pubkey
    program_id: Pubkey
    bids: Pubkey
    asks: Pubkey
    event_queue: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    vault_signer: Pubkey
    base_mint: Pubkey = ZERO_PUBKEY
    quote_mint: Pubkey = ZERO_PUBKEY


@dataclass(slots=True)
class Pool:
    id: Pubkey
    authority: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    market_id: Pubkey
    lp_mint: Pubkey
    base_decimals: int
    quote_decimals: int
    default_fee_bps: int
    version: PoolVersion = PoolVersion.V4
    state: PoolState = field(default_factory=PoolState)
    from_index: bool = False
    open_time_ms: int = 0
    observed_at: float = field(default_factory=time.time)
    open_orders: Pubkey = ZERO_PUBKEY
    target_orders: Pubkey = ZERO_PUBKEY
    market_program_id: Pubkey = ZERO_PUBKEY
    base_need_take_pnl: int = 0
    quote_need_take_pnl: int = 0
    raw_status: int = 0
    market: Optional[MarketInfo] = None

    def clone(self) -> "Pool":
        market = dataclasses.replace(self.market) if self.market is not None else None
        return dataclasses.replace(self, state=self.state.copy(), market=market)

    @property
    def is_active(self) -> bool:
        return self.state.status is PoolStatus.ACTIVE

    @property
    def total_reserves(self) -> int:
        return self.state.base_reserve + self.state.quote_reserve

    def has_mints(self, mint_a: Pubkey, mint_b: Pubkey) -> bool:
        return {self.base_mint, self.quote_mint} == {mint_a, mint_b}

    def direction_for(self, source_mint: Pubkey) -> SwapDirection:
        if source_mint == self.base_mint:
            return SwapDirection.BASE_TO_QUOTE
        if source_mint == self.quote_mint:
            return SwapDirection.QUOTE_TO_BASE
        raise ValueError(f"mint {source_mint} is not part of pool {self.id}")

    def reserves_for(self, direction: SwapDirection) -> tuple[int, int, int, int]:
        """Return ``(reserve_in, reserve_out, decimals_in, decimals_out)``."""
        s = self.state
        if direction is SwapDirection.BASE_TO_QUOTE:
            return s.base_reserve, s.quote_reserve, self.base_decimals, self.quote_decimals
        return s.quote_reserve, s.base_reserve, self.quote_decimals, self.base_decimals


@dataclass(slots=True)
class SwapQuote:
    amount_in: int
    amount_out: int
    min_amount_out: int
    fee_amount: int
    price_impact_pct: float


@dataclass(slots=True)
class SwapParams:
    """Single-use description of one swap transaction."""

    user_wallet: Pubkey
    sign_fn: Callable[..., Any]
    amount_in: int
    min_amount_out: int
    pool: Pool
    source_token_account: Pubkey
    destination_token_account: Pubkey
    priority_fee_micro_lamports: int = 0
    compute_unit_limit: int = 0
    direction: SwapDirection = SwapDirection.BASE_TO_QUOTE
    slippage_bps: int = 0
    wait_confirmation: bool = True
    deadline: Optional[float] = None
    heap_bytes: int = 0


@dataclass(slots=True)
class CacheEntry:
    pool: Pool
    expire_at: float
    last_update: float
    update_count: int
    source: CacheSource

    def clone(self) -> "CacheEntry":
        return dataclasses.replace(self, pool=self.pool.clone())


@dataclass(slots=True)
class ExecutionStatus:
    signature: Optional[str]
    state: ExecutionState = ExecutionState.PENDING
    confirmations: Optional[int] = None
    slot: Optional[int] = None
    error_message: Optional[str] = None
    observed_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.state in (ExecutionState.CONFIRMED, ExecutionState.FINALIZED)


__all__ = [
    "ZERO_PUBKEY",
    "PoolVersion",
    "PoolStatus",
    "SwapDirection",
    "ExecutionState",
    "CacheSource",
    "PoolState",
    "MarketInfo",
    "Pool",
    "SwapQuote",
    "SwapParams",
    "CacheEntry",
    "ExecutionStatus",
]
