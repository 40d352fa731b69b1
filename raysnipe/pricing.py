"""Constant-product quoting, slippage bounds and liquidity guardrails."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Optional, Tuple

from .errors import (
    Imbalanced,
    InputError,
    InsufficientLiquidity,
    PriceImpactTooHigh,
    SlippageOutOfRange,
    SwapTooLarge,
    ZeroReserves,
)
from .models import Pool, SwapDirection, SwapQuote

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
DEFAULT_MAX_IMPACT_PCT = 10.0
IMPACT_WARN_PCT = 5.0
DEFAULT_MIN_TOTAL_LIQUIDITY = 1_000_000
DEFAULT_MAX_SWAP_RATIO = 0.1


class SlippageKind(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    PERCENT = "percent"


@dataclass(frozen=True, slots=True)
class SlippagePolicy:
    kind: SlippageKind
    value: float = 0.0

    @classmethod
    def none(cls) -> "SlippagePolicy":
        return cls(SlippageKind.NONE)

    @classmethod
    def fixed(cls, amount: float) -> "SlippagePolicy":
        if amount < 0 or not math.isfinite(amount):
            raise SlippageOutOfRange(f"fixed slippage must be >= 0, got {amount}")
        return cls(SlippageKind.FIXED, float(amount))

    @classmethod
    def percent(cls, pct: float) -> "SlippagePolicy":
        if not (0 < pct <= 100):
            raise SlippageOutOfRange(f"percent slippage must be in (0, 100], got {pct}")
        return cls(SlippageKind.PERCENT, float(pct))

    @classmethod
    def from_bps(cls, bps: int) -> "SlippagePolicy":
        if not 0 <= bps <= BPS_DENOMINATOR:
            raise SlippageOutOfRange(f"slippage bps must be in [0, 10000], got {bps}")
        return cls(SlippageKind.PERCENT, bps / 100)

    @property
    def bps(self) -> int:
        if self.kind is SlippageKind.PERCENT:
            return int(round(self.value * 100))
        return 0

    def __str__(self) -> str:
        if self.kind is SlippageKind.NONE:
            return "none"
        if self.kind is SlippageKind.FIXED:
            return f"fixed:{self.value:g}"
        return f"{self.value:g}"


def parse_slippage(text: str | float | SlippagePolicy) -> SlippagePolicy:
    """Parse ``"none"``, ``"fixed:<amount>"`` or ``"<percent>"``."""
    if isinstance(text, SlippagePolicy):
        return text
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return SlippagePolicy.percent(float(text))
    if not isinstance(text, str) or not text.strip():
        raise InputError(f"slippage must be a non-empty string, got {text!r}")
    raw = text.strip().lower()
    if raw == "none":
        return SlippagePolicy.none()
    if raw.startswith("fixed:"):
        try:
            amount = float(raw.split(":", 1)[1])
        except ValueError as exc:
            raise InputError(f"invalid fixed slippage {text!r}") from exc
        return SlippagePolicy.fixed(amount)
    try:
        pct = float(raw.rstrip("%"))
    except ValueError as exc:
        raise InputError(f"unknown slippage {text!r}") from exc
    return SlippagePolicy.percent(pct)


def min_amount_out(amount_out: int, policy: SlippagePolicy) -> int:
    """Return the ``minAmountOut`` bound for *amount_out* under *policy*.

    The bound is never zero so the AMM does not reject it.
    """
    if policy.kind is SlippageKind.NONE:
        return 1
    if policy.kind is SlippageKind.FIXED:
        result = math.floor(policy.value)
    else:
        keep = 1 - Fraction(str(policy.value)) / 100
        result = math.floor(amount_out * keep)
    return result if result > 0 else 1


def quote_out(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_bps: int,
    decimals_in: int = 0,
    decimals_out: int = 0,
) -> Tuple[int, int]:
    """Return ``(amount_out, fee_amount)`` in raw units of the output/input token."""
    if reserve_in <= 0 or reserve_out <= 0:
        raise ZeroReserves(f"reserves must be positive (in={reserve_in}, out={reserve_out})")
    scale_in = 10 ** decimals_in
    scale_out = 10 ** decimals_out
    x = Fraction(reserve_in, scale_in)
    y = Fraction(reserve_out, scale_out)
    fee = Fraction(fee_bps, BPS_DENOMINATOR)
    net = Fraction(amount_in, scale_in) * (1 - fee)
    out = net * y / (x + net)
    return math.floor(out * scale_out), math.floor(amount_in * fee)


def price_impact_pct(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int = 0) -> float:
    if reserve_in <= 0 or reserve_out <= 0:
        raise ZeroReserves(f"reserves must be positive (in={reserve_in}, out={reserve_out})")
    x = Fraction(reserve_in)
    y = Fraction(reserve_out)
    net = amount_in * (1 - Fraction(fee_bps, BPS_DENOMINATOR))
    before = y / x
    new_x = x + net
    after = (x * y / new_x) / new_x
    return float(abs(before - after) / before * 100)


@dataclass(slots=True)
class PricingLimits:
    max_impact_pct: float = DEFAULT_MAX_IMPACT_PCT
    min_total_liquidity: int = DEFAULT_MIN_TOTAL_LIQUIDITY
    max_swap_ratio: float = DEFAULT_MAX_SWAP_RATIO
    # None disables the reserve parity check
    max_reserve_imbalance: Optional[float] = None


def check_liquidity(
    pool: Pool,
    amount_in: int,
    direction: SwapDirection,
    limits: PricingLimits | None = None,
) -> None:
    limits = limits or PricingLimits()
    reserve_in, reserve_out, dec_in, dec_out = pool.reserves_for(direction)
    if reserve_in <= 0 or reserve_out <= 0:
        raise ZeroReserves(f"pool {pool.id} has an empty side")
    total = pool.total_reserves
    if total < limits.min_total_liquidity:
        raise InsufficientLiquidity(
            f"total liquidity {total} below minimum {limits.min_total_liquidity}"
        )
    ratio = amount_in / reserve_in
    if ratio > limits.max_swap_ratio:
        raise SwapTooLarge(
            f"swap is {ratio:.2%} of the input reserve (max {limits.max_swap_ratio:.2%})"
        )
    if limits.max_reserve_imbalance:
        balance = (Fraction(reserve_in, 10 ** dec_in)) / (Fraction(reserve_out, 10 ** dec_out))
        cap = Fraction(str(limits.max_reserve_imbalance))
        if balance > cap or balance < 1 / cap:
            raise Imbalanced(
                f"reserve ratio {float(balance):.4f} outside [1/{limits.max_reserve_imbalance:g}, "
                f"{limits.max_reserve_imbalance:g}]"
            )


class PricingEngine:
    """Quote swaps against a pool snapshot and enforce the guardrails."""

    def __init__(self, limits: PricingLimits | None = None) -> None:
        self.limits = limits or PricingLimits()

    def quote(
        self,
        pool: Pool,
        amount_in: int,
        direction: SwapDirection,
        slippage: SlippagePolicy | str,
    ) -> SwapQuote:
        if amount_in <= 0:
            raise InputError(f"amount_in must be positive, got {amount_in}")
        policy = parse_slippage(slippage)
        reserve_in, reserve_out, dec_in, dec_out = pool.reserves_for(direction)
        amount_out, fee_amount = quote_out(
            amount_in, reserve_in, reserve_out, pool.default_fee_bps, dec_in, dec_out
        )
        impact = price_impact_pct(amount_in, reserve_in, reserve_out, pool.default_fee_bps)
        if impact > self.limits.max_impact_pct:
            raise PriceImpactTooHigh(impact, self.limits.max_impact_pct)
        if impact > IMPACT_WARN_PCT:
            logger.warning("High price impact %.2f%% on pool %s", impact, pool.id)
        check_liquidity(pool, amount_in, direction, self.limits)
        if amount_out <= 0:
            raise InsufficientLiquidity(f"swap of {amount_in} yields no output")
        bound = min_amount_out(amount_out, policy)
        if bound > amount_out:
            raise SlippageOutOfRange(
                f"minimum output {bound} exceeds the quoted output {amount_out}"
            )
        logger.debug(
            "Quote pool=%s dir=%s in=%d out=%d min=%d fee=%d impact=%.4f%%",
            pool.id,
            direction.name,
            amount_in,
            amount_out,
            bound,
            fee_amount,
            impact,
        )
        return SwapQuote(
            amount_in=amount_in,
            amount_out=amount_out,
            min_amount_out=bound,
            fee_amount=fee_amount,
            price_impact_pct=impact,
        )


__all__ = [
    "SlippageKind",
    "SlippagePolicy",
    "parse_slippage",
    "min_amount_out",
    "quote_out",
    "price_impact_pct",
    "PricingLimits",
    "check_liquidity",
    "PricingEngine",
]
