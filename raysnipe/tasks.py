"""Task records consumed by the dispatcher and the results it emits."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from solders.pubkey import Pubkey

from .errors import InputError, SnipeError
from .pricing import SlippagePolicy, parse_slippage
from .priority import DEFAULT_UNITS
from .util import parse_bool

ACTION_BUY = "buy"
ACTION_SELL = "sell"

STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass(slots=True)
class AutosellPlan:
    percent: float
    delay: float = 0.0


@dataclass(slots=True)
class Task:
    task_name: str
    wallet: str
    source_token: Pubkey
    target_token: Pubkey
    amount_in: int
    slippage: SlippagePolicy = field(default_factory=SlippagePolicy.none)
    priority_fee_sol: float = 0.0
    compute_units: int = DEFAULT_UNITS
    autosell_percent: Optional[float] = None
    autosell_delay: float = 0.0
    deadline_seconds: Optional[float] = None
    wait_confirmation: bool = True

    @property
    def pair(self) -> str:
        return f"{self.source_token}/{self.target_token}"

    @property
    def autosell(self) -> Optional[AutosellPlan]:
        if self.autosell_percent is None:
            return None
        return AutosellPlan(self.autosell_percent, self.autosell_delay)


@dataclass(slots=True)
class TradeResult:
    wallet: str
    pair: str
    action: str
    amount_in: int
    status: str
    amount_out: int = 0
    signature: Optional[str] = None
    error_message: Optional[str] = None
    task_name: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.status in ("confirmed", "finalized", "pending")

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "taskName": self.task_name,
            "wallet": self.wallet,
            "pair": self.pair,
            "action": self.action,
            "amountIn": self.amount_in,
            "amountOut": self.amount_out,
            "signature": self.signature,
            "status": self.status,
        }
        if self.error_message:
            record["errorMessage"] = self.error_message
        return record


def _pick(record: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in record and record[name] not in (None, ""):
            return record[name]
    return None


def _pubkey(value: Any, name: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if not isinstance(value, str):
        raise InputError(f"{name} must be a base58 public key, got {value!r}")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as exc:
        raise InputError(f"{name} is not a valid public key: {value!r}") from exc


def _number(value: Any, name: str, cast=float) -> Any:
    try:
        number = cast(value)
    except (TypeError, ValueError) as exc:
        raise InputError(f"{name} must be numeric, got {value!r}") from exc
    if isinstance(number, float) and not math.isfinite(number):
        raise InputError(f"{name} must be finite")
    return number


def _amount(value: Any) -> int:
    if isinstance(value, bool):
        raise InputError("amountIn must be an integer amount")
    if isinstance(value, float):
        if not value.is_integer():
            raise InputError(f"amountIn must be in raw token units, got {value}")
        value = int(value)
    amount = _number(value, "amountIn", int)
    if amount <= 0:
        raise InputError(f"amountIn must be positive, got {amount}")
    return amount


def task_from_record(record: Mapping[str, Any], *, default_slippage: str = "none") -> Task:
    """Build a :class:`Task` from a flat loader record.

    Keys may be camelCase (``amountIn``) or snake_case (``amount_in``).
    """
    name = _pick(record, "taskName", "task_name") or ""
    wallet = _pick(record, "walletRef", "wallet_ref", "wallet")
    if not wallet:
        raise InputError(f"task {name!r} has no wallet reference")
    source = _pubkey(_pick(record, "sourceToken", "source_token"), "sourceToken")
    target = _pubkey(_pick(record, "targetToken", "target_token"), "targetToken")
    if source == target:
        raise InputError(f"task {name!r} swaps a token for itself")
    amount = _pick(record, "amountIn", "amount_in")
    if amount is None:
        raise InputError(f"task {name!r} has no amountIn")

    slippage_raw = _pick(record, "slippage")
    try:
        slippage = parse_slippage(slippage_raw if slippage_raw is not None else default_slippage)
    except SnipeError as exc:
        raise InputError(f"task {name!r}: {exc.message}") from exc

    fee = _number(_pick(record, "priorityFee", "priority_fee_sol", "priority_fee") or 0.0, "priorityFee")
    if fee < 0:
        raise InputError("priorityFee must be >= 0")
    units = _pick(record, "computeUnits", "computeUnitLimit", "compute_units", "compute_unit_limit")
    units = DEFAULT_UNITS if units is None else _number(units, "computeUnits", int)
    if units < 0:
        raise InputError("computeUnits must be >= 0")

    autosell_percent = _pick(record, "autosellPercent", "autosell_percent")
    if autosell_percent is not None:
        autosell_percent = _number(autosell_percent, "autosellPercent")
        if not 0 < autosell_percent <= 100:
            raise InputError(f"autosellPercent must be in (0, 100], got {autosell_percent}")
    delay = _number(
        _pick(record, "autosellDelaySeconds", "autosell_delay_seconds", "autosell_delay") or 0.0,
        "autosellDelaySeconds",
    )
    if delay < 0:
        raise InputError("autosellDelaySeconds must be >= 0")
    deadline = _pick(record, "deadlineSeconds", "deadline_seconds")
    if deadline is not None:
        deadline = _number(deadline, "deadlineSeconds")
        if deadline <= 0:
            raise InputError("deadlineSeconds must be positive")
    wait = _pick(record, "waitConfirmation", "wait_confirmation")

    return Task(
        task_name=str(name),
        wallet=str(wallet),
        source_token=source,
        target_token=target,
        amount_in=_amount(amount),
        slippage=slippage,
        priority_fee_sol=fee,
        compute_units=units,
        autosell_percent=autosell_percent,
        autosell_delay=delay,
        deadline_seconds=deadline,
        wait_confirmation=parse_bool(wait, True),
    )


__all__ = [
    "ACTION_BUY",
    "ACTION_SELL",
    "AutosellPlan",
    "Task",
    "TradeResult",
    "task_from_record",
]
