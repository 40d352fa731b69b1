"""Binary layouts for the instructions and accounts the core touches.

Covers the compute-budget program payloads, the Raydium AMM V4 ``swapBaseIn``
instruction, the AMM V4 pool state account, the OpenBook market account and
the SPL token account amount field.
"""

from __future__ import annotations

import struct
import time
from typing import Any, Dict, NamedTuple, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .errors import DecodeError, InputError
from .models import (
    ZERO_PUBKEY,
    MarketInfo,
    Pool,
    PoolState,
    PoolStatus,
    PoolVersion,
    SwapDirection,
)

RAYDIUM_AMM_V4_PROGRAM_ID = Pubkey.from_string("675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8")
RAYDIUM_AMM_AUTHORITY = Pubkey.from_string("5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1")
OPENBOOK_PROGRAM_ID = Pubkey.from_string("srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

CB_REQUEST_HEAP_FRAME = 1
CB_SET_COMPUTE_UNIT_LIMIT = 2
CB_SET_COMPUTE_UNIT_PRICE = 3

SWAP_BASE_IN_DISCRIMINATOR = 9
SWAP_PAYLOAD_SIZE = 17

_U8_MAX = 0xFF
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


def _check_width(value: int, limit: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InputError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > limit:
        raise InputError(f"{name}={value} does not fit in {limit.bit_length()} bits")
    return value


# ---------------------------------------------------------------------------
# Compute budget
# ---------------------------------------------------------------------------


def encode_compute_budget_set_limit(units: int) -> bytes:
    return struct.pack("<BI", CB_SET_COMPUTE_UNIT_LIMIT, _check_width(units, _U32_MAX, "units"))


def encode_compute_budget_set_price(micro_lamports: int) -> bytes:
    return struct.pack(
        "<BQ", CB_SET_COMPUTE_UNIT_PRICE, _check_width(micro_lamports, _U64_MAX, "micro_lamports")
    )


def encode_compute_budget_request_heap(nbytes: int) -> bytes:
    return struct.pack("<BI", CB_REQUEST_HEAP_FRAME, _check_width(nbytes, _U32_MAX, "bytes"))


def compute_budget_instruction(data: bytes) -> Instruction:
    return Instruction(COMPUTE_BUDGET_PROGRAM_ID, bytes(data), [])


# ---------------------------------------------------------------------------
# Swap instruction
# ---------------------------------------------------------------------------


class SwapPayload(NamedTuple):
    discriminator: int
    amount_in: int
    min_amount_out: int
    # not on the wire; echoed from the caller
    direction: SwapDirection = SwapDirection.BASE_TO_QUOTE


_SWAP_STRUCT = struct.Struct("<BQQ")


def encode_swap(discriminator: int, direction: int, amount_in: int, min_amount_out: int) -> bytes:
    """Return the 17 byte ``[disc][amountIn][minAmountOut]`` swap payload.

    ``direction`` is validated but not serialized: the AMM program infers it
    from which user token account is passed as the source.
    """
    _check_width(discriminator, _U8_MAX, "discriminator")
    if direction not in (SwapDirection.BASE_TO_QUOTE, SwapDirection.QUOTE_TO_BASE):
        raise InputError(f"direction must be 0 or 1, got {direction!r}")
    return _SWAP_STRUCT.pack(
        discriminator,
        _check_width(amount_in, _U64_MAX, "amount_in"),
        _check_width(min_amount_out, _U64_MAX, "min_amount_out"),
    )


def decode_swap(data: bytes, direction: int = SwapDirection.BASE_TO_QUOTE) -> SwapPayload:
    """Inverse of :func:`encode_swap`.

    The payload carries no direction, so the one the caller supplies is
    validated and returned as is.
    """
    if len(data) != SWAP_PAYLOAD_SIZE:
        raise DecodeError(f"swap payload must be {SWAP_PAYLOAD_SIZE} bytes, got {len(data)}")
    if direction not in (SwapDirection.BASE_TO_QUOTE, SwapDirection.QUOTE_TO_BASE):
        raise InputError(f"direction must be 0 or 1, got {direction!r}")
    return SwapPayload(*_SWAP_STRUCT.unpack(data), SwapDirection(direction))


def swap_instruction(
    pool: Pool,
    user_owner: Pubkey,
    source_account: Pubkey,
    destination_account: Pubkey,
    amount_in: int,
    min_amount_out: int,
    direction: SwapDirection,
    *,
    discriminator: int = SWAP_BASE_IN_DISCRIMINATOR,
    program_id: Pubkey = RAYDIUM_AMM_V4_PROGRAM_ID,
) -> Instruction:
    market = pool.market
    if market is None:
        raise InputError(f"pool {pool.id} has no market accounts loaded")
    data = encode_swap(discriminator, int(direction), amount_in, min_amount_out)
    accounts = [
        AccountMeta(TOKEN_PROGRAM_ID, False, False),
        AccountMeta(pool.id, False, True),
        AccountMeta(pool.authority, False, False),
        AccountMeta(pool.open_orders, False, True),
        AccountMeta(pool.target_orders, False, True),
        AccountMeta(pool.base_vault, False, True),
        AccountMeta(pool.quote_vault, False, True),
        AccountMeta(market.program_id, False, False),
        AccountMeta(market.market_id, False, True),
        AccountMeta(market.bids, False, True),
        AccountMeta(market.asks, False, True),
        AccountMeta(market.event_queue, False, True),
        AccountMeta(market.base_vault, False, True),
        AccountMeta(market.quote_vault, False, True),
        AccountMeta(market.vault_signer, False, False),
        AccountMeta(source_account, False, True),
        AccountMeta(destination_account, False, True),
        AccountMeta(user_owner, True, False),
    ]
    return Instruction(program_id, data, accounts)


# ---------------------------------------------------------------------------
# AMM V4 pool account
# ---------------------------------------------------------------------------

_POOL_U64_FIELDS = (
    "status",
    "nonce",
    "max_order",
    "depth",
    "base_decimal",
    "quote_decimal",
    "state",
    "reset_flag",
    "min_size",
    "vol_max_cut_ratio",
    "amount_wave_ratio",
    "base_lot_size",
    "quote_lot_size",
    "min_price_multiplier",
    "max_price_multiplier",
    "system_decimal_value",
    "min_separate_numerator",
    "min_separate_denominator",
    "trade_fee_numerator",
    "trade_fee_denominator",
    "pnl_numerator",
    "pnl_denominator",
    "swap_fee_numerator",
    "swap_fee_denominator",
    "base_need_take_pnl",
    "quote_need_take_pnl",
    "quote_total_pnl",
    "base_total_pnl",
    "pool_open_time",
    "punish_pc_amount",
    "punish_coin_amount",
    "orderbook_to_init_time",
)
_POOL_SWAP_FIELDS = (
    "swap_base_in_amount",
    "swap_quote_out_amount",
    "swap_base2quote_fee",
    "swap_quote_in_amount",
    "swap_base_out_amount",
    "swap_quote2base_fee",
)
_POOL_KEY_FIELDS = (
    "base_vault",
    "quote_vault",
    "base_mint",
    "quote_mint",
    "lp_mint",
    "open_orders",
    "market_id",
    "market_program_id",
    "target_orders",
    "withdraw_queue",
    "lp_vault",
    "owner",
)
_POOL_TAIL_FIELDS = ("lp_reserve", "_pad0", "_pad1", "_pad2")
_POOL_FIELDS = _POOL_U64_FIELDS + _POOL_SWAP_FIELDS + _POOL_KEY_FIELDS + _POOL_TAIL_FIELDS
_POOL_STRUCT = struct.Struct(
    "<" + "Q" * len(_POOL_U64_FIELDS) + "16s16sQ16s16sQ" + "32s" * len(_POOL_KEY_FIELDS) + "4Q"
)

POOL_ACCOUNT_SIZE = _POOL_STRUCT.size
BASE_MINT_OFFSET = 8 * len(_POOL_U64_FIELDS) + 80 + 2 * 32
QUOTE_MINT_OFFSET = BASE_MINT_OFFSET + 32

# Raw AMM status values.
_ACTIVE_STATUSES = {1, 6}
_WAITING_STATUS = 7
_STATUS_TO_RAW = {
    PoolStatus.ACTIVE: 6,
    PoolStatus.INITIALIZED: 7,
    PoolStatus.DISABLED: 2,
    PoolStatus.UNINITIALIZED: 0,
}
_MAX_DECIMALS = 32


def _map_status(raw_status: int) -> PoolStatus:
    if raw_status in _ACTIVE_STATUSES:
        return PoolStatus.ACTIVE
    if raw_status == _WAITING_STATUS:
        return PoolStatus.INITIALIZED
    if raw_status == 0:
        return PoolStatus.UNINITIALIZED
    return PoolStatus.DISABLED


def unpack_pool_fields(raw: bytes) -> Dict[str, Any]:
    if len(raw) < POOL_ACCOUNT_SIZE:
        raise DecodeError(f"pool account too short: {len(raw)} < {POOL_ACCOUNT_SIZE}")
    return dict(zip(_POOL_FIELDS, _POOL_STRUCT.unpack_from(raw, 0)))


def decode_pool_account(
    raw: bytes,
    *,
    pool_id: Pubkey | None = None,
    base_vault_data: bytes | None = None,
    quote_vault_data: bytes | None = None,
    version: PoolVersion = PoolVersion.V4,
    now: float | None = None,
) -> Pool:
    """Decode an AMM V4 pool state account into a :class:`Pool`.

    Reserves live in the pool's vault token accounts; when their raw data is
    supplied the reserves are the vault balances minus the pending PnL.
    Without vault data the reserves are zero and an active pool is reported
    as ``INITIALIZED``.
    """
    if version is not PoolVersion.V4:
        raise DecodeError(f"unsupported pool version {version.name}")
    fields = unpack_pool_fields(raw)

    keys = {name: Pubkey.from_bytes(fields[name]) for name in _POOL_KEY_FIELDS}
    for name in ("base_mint", "quote_mint", "base_vault", "quote_vault"):
        if keys[name] == ZERO_PUBKEY:
            raise DecodeError(f"pool field {name} is zero")

    base_decimals = fields["base_decimal"]
    quote_decimals = fields["quote_decimal"]
    if base_decimals > _MAX_DECIMALS or quote_decimals > _MAX_DECIMALS:
        raise DecodeError(f"pool decimals out of range: {base_decimals}/{quote_decimals}")

    fee_den = fields["swap_fee_denominator"]
    if fee_den == 0:
        raise DecodeError("pool swap fee denominator is zero")
    fee_bps = fields["swap_fee_numerator"] * 10_000 // fee_den
    if not 1 <= fee_bps <= 10_000:
        raise DecodeError(f"pool swap fee out of range: {fee_bps} bps")

    base_reserve = quote_reserve = 0
    if base_vault_data is not None:
        base_reserve = max(0, decode_token_account_amount(base_vault_data) - fields["base_need_take_pnl"])
    if quote_vault_data is not None:
        quote_reserve = max(0, decode_token_account_amount(quote_vault_data) - fields["quote_need_take_pnl"])

    status = _map_status(fields["status"])
    open_time = fields["pool_open_time"]
    current = time.time() if now is None else now
    if status is PoolStatus.ACTIVE and open_time and open_time > current:
        status = PoolStatus.INITIALIZED
    if status is PoolStatus.ACTIVE and (base_reserve == 0 or quote_reserve == 0):
        status = PoolStatus.INITIALIZED

    return Pool(
        id=pool_id or ZERO_PUBKEY,
        authority=RAYDIUM_AMM_AUTHORITY,
        base_mint=keys["base_mint"],
        quote_mint=keys["quote_mint"],
        base_vault=keys["base_vault"],
        quote_vault=keys["quote_vault"],
        market_id=keys["market_id"],
        lp_mint=keys["lp_mint"],
        base_decimals=base_decimals,
        quote_decimals=quote_decimals,
        default_fee_bps=fee_bps,
        version=PoolVersion.V4,
        state=PoolState(base_reserve, quote_reserve, status),
        open_time_ms=open_time * 1000,
        observed_at=current,
        open_orders=keys["open_orders"],
        target_orders=keys["target_orders"],
        market_program_id=keys["market_program_id"],
        base_need_take_pnl=fields["base_need_take_pnl"],
        quote_need_take_pnl=fields["quote_need_take_pnl"],
        raw_status=fields["status"],
    )


def encode_pool_account(pool: Pool, **overrides: Any) -> bytes:
    """Serialize *pool* back into the 752 byte AMM V4 layout.

    ``overrides`` replaces raw layout fields by name (``nonce``, ``status``...).
    """
    values: Dict[str, Any] = {name: 0 for name in _POOL_U64_FIELDS}
    values.update(
        status=pool.raw_status or _STATUS_TO_RAW[pool.state.status],
        base_decimal=pool.base_decimals,
        quote_decimal=pool.quote_decimals,
        swap_fee_numerator=pool.default_fee_bps,
        swap_fee_denominator=10_000,
        trade_fee_numerator=pool.default_fee_bps,
        trade_fee_denominator=10_000,
        base_need_take_pnl=pool.base_need_take_pnl,
        quote_need_take_pnl=pool.quote_need_take_pnl,
        pool_open_time=pool.open_time_ms // 1000,
    )
    for name in _POOL_SWAP_FIELDS:
        values[name] = 0 if name.endswith("_fee") else b"\x00" * 16
    keys = {
        "base_vault": pool.base_vault,
        "quote_vault": pool.quote_vault,
        "base_mint": pool.base_mint,
        "quote_mint": pool.quote_mint,
        "lp_mint": pool.lp_mint,
        "open_orders": pool.open_orders,
        "market_id": pool.market_id,
        "market_program_id": pool.market_program_id,
        "target_orders": pool.target_orders,
        "withdraw_queue": ZERO_PUBKEY,
        "lp_vault": ZERO_PUBKEY,
        "owner": ZERO_PUBKEY,
    }
    values.update({name: bytes(key) for name, key in keys.items()})
    values.update({name: 0 for name in _POOL_TAIL_FIELDS})
    for name, value in overrides.items():
        if name not in values:
            raise KeyError(f"unknown pool layout field {name!r}")
        values[name] = bytes(value) if isinstance(value, Pubkey) else value
    return _POOL_STRUCT.pack(*(values[name] for name in _POOL_FIELDS))


# ---------------------------------------------------------------------------
# OpenBook market account
# ---------------------------------------------------------------------------

_MARKET_FIELDS = (
    "_head",
    "account_flags",
    "own_address",
    "vault_signer_nonce",
    "base_mint",
    "quote_mint",
    "base_vault",
    "base_deposits_total",
    "base_fees_accrued",
    "quote_vault",
    "quote_deposits_total",
    "quote_fees_accrued",
    "quote_dust_threshold",
    "request_queue",
    "event_queue",
    "bids",
    "asks",
    "base_lot_size",
    "quote_lot_size",
    "fee_rate_bps",
    "referrer_rebate_accrued",
    "_tail",
)
_MARKET_STRUCT = struct.Struct("<5s8s32sQ32s32s32sQQ32sQQQ32s32s32s32sQQQQ7s")
MARKET_ACCOUNT_SIZE = _MARKET_STRUCT.size
_MARKET_KEY_FIELDS = (
    "own_address",
    "base_mint",
    "quote_mint",
    "base_vault",
    "quote_vault",
    "request_queue",
    "event_queue",
    "bids",
    "asks",
)


def market_vault_signer(market_id: Pubkey, nonce: int, program_id: Pubkey = OPENBOOK_PROGRAM_ID) -> Pubkey:
    return Pubkey.create_program_address(
        [bytes(market_id), nonce.to_bytes(8, "little")], program_id
    )


def find_vault_signer_nonce(
    market_id: Pubkey, program_id: Pubkey = OPENBOOK_PROGRAM_ID
) -> tuple[Pubkey, int]:
    """Return the first ``(vault_signer, nonce)`` pair valid for *market_id*."""
    for nonce in range(256):
        try:
            return market_vault_signer(market_id, nonce, program_id), nonce
        except Exception:
            continue
    raise DecodeError(f"no vault signer nonce found for market {market_id}")


def decode_market_account(raw: bytes, *, program_id: Pubkey = OPENBOOK_PROGRAM_ID) -> MarketInfo:
    if len(raw) < MARKET_ACCOUNT_SIZE:
        raise DecodeError(f"market account too short: {len(raw)} < {MARKET_ACCOUNT_SIZE}")
    fields = dict(zip(_MARKET_FIELDS, _MARKET_STRUCT.unpack_from(raw, 0)))
    keys = {name: Pubkey.from_bytes(fields[name]) for name in _MARKET_KEY_FIELDS}
    market_id = keys["own_address"]
    try:
        vault_signer = market_vault_signer(market_id, fields["vault_signer_nonce"], program_id)
    except Exception as exc:
        raise DecodeError(f"invalid vault signer nonce for market {market_id}") from exc
    return MarketInfo(
        market_id=market_id,
        program_id=program_id,
        bids=keys["bids"],
        asks=keys["asks"],
        event_queue=keys["event_queue"],
        base_vault=keys["base_vault"],
        quote_vault=keys["quote_vault"],
        vault_signer=vault_signer,
        base_mint=keys["base_mint"],
        quote_mint=keys["quote_mint"],
    )


def encode_market_account(market: MarketInfo, nonce: int, **overrides: Any) -> bytes:
    values: Dict[str, Any] = {
        "_head": b"serum",
        "account_flags": (1 | 2).to_bytes(8, "little"),
        "own_address": bytes(market.market_id),
        "vault_signer_nonce": nonce,
        "base_mint": bytes(market.base_mint),
        "quote_mint": bytes(market.quote_mint),
        "base_vault": bytes(market.base_vault),
        "quote_vault": bytes(market.quote_vault),
        "request_queue": bytes(ZERO_PUBKEY),
        "event_queue": bytes(market.event_queue),
        "bids": bytes(market.bids),
        "asks": bytes(market.asks),
        "_tail": b"padding",
    }
    for name in _MARKET_FIELDS:
        values.setdefault(name, 0)
    values.update(overrides)
    return _MARKET_STRUCT.pack(*(values[name] for name in _MARKET_FIELDS))


# ---------------------------------------------------------------------------
# SPL token account
# ---------------------------------------------------------------------------

TOKEN_ACCOUNT_SIZE = 165
_TOKEN_AMOUNT_OFFSET = 64
_TOKEN_STATE_OFFSET = 108


def decode_token_account_amount(raw: bytes) -> int:
    if len(raw) < _TOKEN_AMOUNT_OFFSET + 8:
        raise DecodeError(f"token account too short: {len(raw)}")
    return int.from_bytes(raw[_TOKEN_AMOUNT_OFFSET:_TOKEN_AMOUNT_OFFSET + 8], "little")


def encode_token_account(mint: Pubkey, owner: Pubkey, amount: int) -> bytes:
    buf = bytearray(TOKEN_ACCOUNT_SIZE)
    buf[0:32] = bytes(mint)
    buf[32:64] = bytes(owner)
    buf[_TOKEN_AMOUNT_OFFSET:_TOKEN_AMOUNT_OFFSET + 8] = _check_width(amount, _U64_MAX, "amount").to_bytes(
        8, "little"
    )
    buf[_TOKEN_STATE_OFFSET] = 1
    return bytes(buf)


def account_data(account: Optional[Any]) -> Optional[bytes]:
    """Return raw bytes from a solders ``Account`` (or ``None``)."""
    if account is None:
        return None
    data = getattr(account, "data", account)
    return bytes(data)


__all__ = [
    "RAYDIUM_AMM_V4_PROGRAM_ID",
    "RAYDIUM_AMM_AUTHORITY",
    "OPENBOOK_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "COMPUTE_BUDGET_PROGRAM_ID",
    "WSOL_MINT",
    "SWAP_BASE_IN_DISCRIMINATOR",
    "SWAP_PAYLOAD_SIZE",
    "POOL_ACCOUNT_SIZE",
    "BASE_MINT_OFFSET",
    "QUOTE_MINT_OFFSET",
    "MARKET_ACCOUNT_SIZE",
    "TOKEN_ACCOUNT_SIZE",
    "SwapPayload",
    "encode_compute_budget_set_limit",
    "encode_compute_budget_set_price",
    "encode_compute_budget_request_heap",
    "compute_budget_instruction",
    "encode_swap",
    "decode_swap",
    "swap_instruction",
    "unpack_pool_fields",
    "decode_pool_account",
    "encode_pool_account",
    "market_vault_signer",
    "find_vault_signer_nonce",
    "decode_market_account",
    "encode_market_account",
    "decode_token_account_amount",
    "encode_token_account",
    "account_data",
]
