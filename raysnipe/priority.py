"""Compute-budget presets and priority fee conversion."""

from __future__ import annotations

import logging
import math
from decimal import Decimal
from dataclasses import dataclass
from enum import Enum
from typing import List

from solders.instruction import Instruction

from .codec import (
    compute_budget_instruction,
    encode_compute_budget_request_heap,
    encode_compute_budget_set_limit,
    encode_compute_budget_set_price,
)
from .errors import InputError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000

DEFAULT_UNITS = 200_000
STANDARD_UNITS = 400_000
SNIPING_UNITS = 1_000_000
EXTREME_HEAP_BYTES = 32 * 1024

# SOL thresholds separating the priority profiles.
LOW_FEE_SOL = 0.000005
MEDIUM_FEE_SOL = 0.00001
HIGH_FEE_SOL = 0.00005


class PriorityProfile(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


def sol_to_lamports(sol: float) -> int:
    if sol < 0 or not math.isfinite(sol):
        raise InputError(f"SOL amount must be a finite non-negative number, got {sol}")
    return int(Decimal(str(sol)) * LAMPORTS_PER_SOL)


def priority_fee_micro_lamports(fee_sol: float, unit_limit: int) -> int:
    """Convert a total SOL priority budget into a per compute unit price.

    >>> priority_fee_micro_lamports(0.000005, 200_000)
    25000
    """
    if fee_sol <= 0:
        return 0
    if unit_limit <= 0:
        raise InputError("unit_limit must be positive when a priority fee is set")
    lamports = sol_to_lamports(fee_sol)
    return lamports * MICRO_LAMPORTS_PER_LAMPORT // unit_limit


def profile_for_fee(fee_sol: float) -> PriorityProfile:
    if fee_sol <= LOW_FEE_SOL:
        return PriorityProfile.LOW
    if fee_sol <= MEDIUM_FEE_SOL:
        return PriorityProfile.MEDIUM
    if fee_sol <= HIGH_FEE_SOL:
        return PriorityProfile.HIGH
    return PriorityProfile.EXTREME


@dataclass(slots=True)
class ComputeBudget:
    unit_limit: int = DEFAULT_UNITS
    micro_lamports: int = 0
    heap_bytes: int = 0

    @classmethod
    def for_fee(cls, fee_sol: float, unit_limit: int = DEFAULT_UNITS) -> "ComputeBudget":
        profile = profile_for_fee(fee_sol)
        budget = cls(
            unit_limit=unit_limit,
            micro_lamports=priority_fee_micro_lamports(fee_sol, unit_limit),
            heap_bytes=EXTREME_HEAP_BYTES if profile is PriorityProfile.EXTREME else 0,
        )
        logger.debug(
            "Compute budget %s: units=%d price=%d uL/CU heap=%d",
            profile.value,
            budget.unit_limit,
            budget.micro_lamports,
            budget.heap_bytes,
        )
        return budget

    @property
    def priority_fee_lamports(self) -> int:
        return self.unit_limit * self.micro_lamports // MICRO_LAMPORTS_PER_LAMPORT

    def instructions(self) -> List[Instruction]:
        out: List[Instruction] = []
        if self.unit_limit > 0:
            out.append(compute_budget_instruction(encode_compute_budget_set_limit(self.unit_limit)))
        if self.micro_lamports > 0:
            out.append(compute_budget_instruction(encode_compute_budget_set_price(self.micro_lamports)))
        if self.heap_bytes > 0:
            out.append(compute_budget_instruction(encode_compute_budget_request_heap(self.heap_bytes)))
        return out


__all__ = [
    "LAMPORTS_PER_SOL",
    "DEFAULT_UNITS",
    "STANDARD_UNITS",
    "SNIPING_UNITS",
    "EXTREME_HEAP_BYTES",
    "PriorityProfile",
    "ComputeBudget",
    "sol_to_lamports",
    "priority_fee_micro_lamports",
    "profile_for_fee",
]
