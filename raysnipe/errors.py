"""Error taxonomy shared by every trading component."""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Any, Iterable, Optional, Sequence


class ErrorKind(str, Enum):
    INPUT = "input"
    RESOLVER = "resolver"
    PRICING = "pricing"
    TRANSPORT_RETRYABLE = "transport_retryable"
    TRANSPORT_CRITICAL = "transport_critical"
    EXECUTION = "execution"
    TIMEOUT = "timeout"


class SnipeError(Exception):
    """Base class for all errors raised by :mod:`raysnipe`."""

    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        text = f"{type(self).__name__}: {self.message}" if self.message else type(self).__name__
        if self.stage:
            return f"stage={self.stage}: {text}"
        return self.message or type(self).__name__


def with_stage(exc: BaseException, stage: str) -> BaseException:
    """Attach *stage* to ``exc`` unless an inner stage is already recorded."""

    if isinstance(exc, SnipeError) and not exc.stage:
        exc.stage = stage
    return exc


# ---------------------------------------------------------------------------
# Input errors
# ---------------------------------------------------------------------------


class InputError(SnipeError, ValueError):
    """Raised for malformed or out-of-range caller input."""

    kind = ErrorKind.INPUT


class MissingSignature(InputError):
    """Raised when the signer cannot produce a required signature."""


class InsufficientBalance(SnipeError):
    """Raised when the wallet cannot cover the swap and its fees."""

    kind = ErrorKind.INPUT

    def __init__(self, required: int, available: int, unit: str = "lamports") -> None:
        super().__init__(f"balance {available} {unit} < required {required}")
        self.required = required
        self.available = available


# ---------------------------------------------------------------------------
# Resolver errors
# ---------------------------------------------------------------------------


class DecodeError(SnipeError, ValueError):
    """Raised when an account buffer cannot be decoded."""

    kind = ErrorKind.RESOLVER


class PoolNotFound(SnipeError):
    """Raised when no pool exists for the requested pair."""

    kind = ErrorKind.RESOLVER


class PoolInactive(SnipeError):
    """Raised when the pool exists but does not accept swaps."""

    kind = ErrorKind.RESOLVER


class PoolUnderLiquidity(SnipeError):
    """Raised when every candidate pool is below the liquidity floor."""

    kind = ErrorKind.RESOLVER


class IndexUnavailable(SnipeError):
    """Raised when the pool index HTTP service cannot be reached."""

    kind = ErrorKind.RESOLVER


# ---------------------------------------------------------------------------
# Pricing errors
# ---------------------------------------------------------------------------


class PricingError(SnipeError):
    kind = ErrorKind.PRICING


class ZeroReserves(PricingError):
    """Raised when either side of the pool holds no tokens."""


class PriceImpactTooHigh(PricingError):
    """Raised when a quote moves the pool price beyond the allowed limit."""

    def __init__(self, impact_pct: float, limit_pct: float) -> None:
        super().__init__(f"price impact {impact_pct:.2f}% exceeds {limit_pct:.2f}%")
        self.impact_pct = impact_pct
        self.limit_pct = limit_pct


class SwapTooLarge(PricingError):
    """Raised when the swap is too large relative to the input reserve."""


class Imbalanced(PricingError):
    """Raised when the pool reserves are too far from parity."""


class SlippageOutOfRange(PricingError):
    """Raised for slippage values outside the accepted range."""


class InsufficientLiquidity(PricingError):
    """Raised when the pool's combined reserves are below the minimum."""


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class RpcError(SnipeError):
    kind = ErrorKind.TRANSPORT_RETRYABLE


class RetryableRpcError(RpcError):
    """Transient RPC failure (timeout, rate limit, connection issue)."""


class CriticalRpcError(RpcError):
    """RPC failure that disqualifies the endpoint that produced it."""

    kind = ErrorKind.TRANSPORT_CRITICAL


class NoHealthyEndpoints(RpcError):
    """Raised when every endpoint in the pool is inactive."""

    kind = ErrorKind.TRANSPORT_CRITICAL


class AllAttemptsExhausted(RpcError):
    """Raised when the retry budget is spent without a success."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"all {attempts} attempts failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RpcTimeout(RpcError):
    """Raised when the overall request deadline elapses."""

    kind = ErrorKind.TIMEOUT


# ---------------------------------------------------------------------------
# Execution errors
# ---------------------------------------------------------------------------


class ValidationError(SnipeError):
    """Raised when a transaction fails local validation before submit."""

    kind = ErrorKind.INPUT


class TransactionFailed(SnipeError):
    """The transaction landed but the chain reported an error."""

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, *, status: Any = None) -> None:
        super().__init__(message)
        self.status = status


class SimulationFailed(SnipeError):
    """Preflight simulation returned an error."""

    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        *,
        logs: Sequence[str] | None = None,
        anchor_error: Any = None,
    ) -> None:
        super().__init__(message)
        self.logs = list(logs or [])
        self.anchor_error = anchor_error


class ConfirmationTimeout(SnipeError):
    """Confirmation did not arrive in time; the signature stays valid."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, signature: str, waited: float) -> None:
        super().__init__(f"signature {signature} not confirmed after {waited:.1f}s")
        self.signature = signature
        self.waited = waited


class DeadlineExceeded(SnipeError):
    """The caller's deadline passed before the work could finish."""

    kind = ErrorKind.TIMEOUT


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    CRITICAL = "critical"
    FATAL = "fatal"


_RETRYABLE_MARKERS = (
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection aborted",
    "no such host",
    "name resolution",
    "name or service not known",
    "temporarily unavailable",
    "blockhash not found",
)
_CRITICAL_MARKERS = (
    "invalid request",
    "unauthorized",
    "forbidden",
    "invalid response",
    "parse error",
)
# bare status codes only count as whole words, base58 text is full of digits
_RETRYABLE_STATUS = re.compile(r"(?<![0-9a-z])(?:429|502|503|504)(?![0-9a-z])")
_CRITICAL_STATUS = re.compile(r"(?<![0-9a-z])(?:401|403)(?![0-9a-z])")
_RETRYABLE_CODES = frozenset({429, 502, 503, 504})
_CRITICAL_CODES = frozenset({401, 403})


def _exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, AllAttemptsExhausted) and current.last_error is not None:
            pending.append(current.last_error)
        nxt = current.__cause__ or current.__context__
        if nxt is not None:
            pending.append(nxt)


def _status_code(err: BaseException) -> Optional[int]:
    for holder in (err, getattr(err, "response", None)):
        for attr in ("status_code", "status"):
            value = getattr(holder, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify an RPC failure for the retry policy.

    ``FATAL`` errors are application-level answers (missing account, bad
    transaction...) that no other endpoint would answer differently.
    """
    chain = list(_exception_chain(exc))
    for err in chain:
        if isinstance(err, CriticalRpcError):
            return ErrorClass.CRITICAL
        if isinstance(err, (RetryableRpcError, RpcTimeout, asyncio.TimeoutError, ConnectionError)):
            return ErrorClass.RETRYABLE
        code = _status_code(err)
        if code in _RETRYABLE_CODES:
            return ErrorClass.RETRYABLE
        if code in _CRITICAL_CODES:
            return ErrorClass.CRITICAL
    text = " ".join(f"{type(err).__name__} {err}" for err in chain).lower()
    if _RETRYABLE_STATUS.search(text) or any(marker in text for marker in _RETRYABLE_MARKERS):
        return ErrorClass.RETRYABLE
    if _CRITICAL_STATUS.search(text) or any(marker in text for marker in _CRITICAL_MARKERS):
        return ErrorClass.CRITICAL
    return ErrorClass.FATAL


def is_retryable(exc: BaseException) -> bool:
    """Whether a failed attempt is worth repeating as a whole.

    Agrees with :func:`classify_error`: anything it calls retryable, including
    an exhausted endpoint pool whose last error was retryable, is retried.
    Other typed errors from this package are final.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, AllAttemptsExhausted):
        return exc.last_error is None or is_retryable(exc.last_error)
    if isinstance(exc, (RetryableRpcError, RpcTimeout)):
        return True
    if isinstance(exc, SnipeError):
        return False
    if classify_error(exc) is ErrorClass.RETRYABLE:
        return True
    return "block height exceeded" in str(exc).lower()


__all__ = [
    "ErrorKind",
    "SnipeError",
    "with_stage",
    "InputError",
    "MissingSignature",
    "InsufficientBalance",
    "DecodeError",
    "PoolNotFound",
    "PoolInactive",
    "PoolUnderLiquidity",
    "IndexUnavailable",
    "PricingError",
    "ZeroReserves",
    "PriceImpactTooHigh",
    "SwapTooLarge",
    "Imbalanced",
    "SlippageOutOfRange",
    "InsufficientLiquidity",
    "RpcError",
    "RetryableRpcError",
    "CriticalRpcError",
    "NoHealthyEndpoints",
    "AllAttemptsExhausted",
    "RpcTimeout",
    "ValidationError",
    "TransactionFailed",
    "SimulationFailed",
    "ConfirmationTimeout",
    "DeadlineExceeded",
    "ErrorClass",
    "classify_error",
    "is_retryable",
]
