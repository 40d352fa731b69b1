"""Watch a pool and fire a swap once it becomes tradable."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Awaitable, Callable, List, Optional

from .errors import InputError, PricingError, SnipeError, is_retryable
from .models import ExecutionState, Pool, PoolState
from .pricing import PricingLimits, check_liquidity
from .swap import SwapExecutor, SwapRequest, SwapResult

logger = logging.getLogger(__name__)

FirePredicate = Callable[[Optional[Pool], Pool], bool]


class SniperState(str, Enum):
    WATCHING = "watching"
    FIRING = "firing"
    BACKOFF = "backoff"
    SUCCESS = "success"
    STOPPED = "stopped"


@dataclass(slots=True)
class SniperEvent:
    state: SniperState
    message: str = ""
    at: float = field(default_factory=time.time)


@dataclass(slots=True)
class SnipeConfig:
    monitor_interval: float = 1.0
    warn_threshold: float = 0.01
    fire_threshold: float = 0.05
    ratio_band: float = 0.2
    # 0 means "use the request's amount_in"
    min_amount: int = 0
    max_retries: int = 3
    backoff_base: float = 1.0
    liquidity_check_interval: float = 5.0
    liquidity_limits: PricingLimits = field(default_factory=PricingLimits)
    predicate: Optional[FirePredicate] = None

    def __post_init__(self) -> None:
        if self.monitor_interval < 1:
            raise InputError(f"monitor_interval must be >= 1s, got {self.monitor_interval}")
        if not 0 < self.warn_threshold <= self.fire_threshold:
            raise InputError("thresholds must satisfy 0 < warn_threshold <= fire_threshold")
        if self.ratio_band < 0:
            raise InputError("ratio_band must be >= 0")
        if self.max_retries < 0:
            raise InputError("max_retries must be >= 0")


def detect_change(prev: PoolState, cur: PoolState, threshold: float) -> bool:
    """Return ``True`` when status flipped or either reserve moved by more than *threshold*."""
    if prev.status is not cur.status:
        return True
    for before, after in ((prev.base_reserve, cur.base_reserve), (prev.quote_reserve, cur.quote_reserve)):
        if before == 0:
            if after != 0:
                return True
            continue
        if abs(after - before) / before > threshold:
            return True
    return False


def default_fire_predicate(pool: Pool, min_amount: int, band: float) -> bool:
    """Active, reserves within ``1 ± band`` of each other and deep enough for *min_amount*."""
    if not pool.is_active:
        return False
    base, quote = pool.state.base_reserve, pool.state.quote_reserve
    if base <= 2 * min_amount or quote <= 2 * min_amount or quote == 0:
        return False
    ratio = Fraction(base, quote)
    band_frac = Fraction(str(band))
    return 1 - band_frac <= ratio <= 1 + band_frac


class SnipingController:
    """Poll ``fetch_state`` every tick and hand the request to the executor when ready.

    ``stop()`` is the only cancellation signal; every wait in the loop
    observes it so ``run`` returns within one tick.
    """

    def __init__(
        self,
        executor: SwapExecutor,
        fetch_state: Callable[[], Awaitable[Pool]],
        request: SwapRequest,
        config: SnipeConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.fetch_state = fetch_state
        self.request = request
        self.config = config or SnipeConfig()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self.state = SniperState.WATCHING
        self.history: List[SniperEvent] = []
        self.attempts = 0
        self.last_error: Optional[BaseException] = None
        self.result: Optional[SwapResult] = None

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _transition(self, state: SniperState, message: str = "") -> None:
        if state is not self.state or message:
            logger.info("Sniper %s: %s -> %s %s", self._label, self.state.value, state.value, message)
        self.state = state
        self.history.append(SniperEvent(state, message))

    @property
    def _label(self) -> str:
        return self.request.task_name or str(self.request.target_mint)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _should_fire(self, prev: Optional[Pool], cur: Pool) -> bool:
        if self.config.predicate is not None:
            return bool(self.config.predicate(prev, cur))
        min_amount = self.config.min_amount or self.request.amount_in
        return default_fire_predicate(cur, min_amount, self.config.ratio_band)

    def _liquidity_ok(self, pool: Pool) -> bool:
        try:
            direction = pool.direction_for(self.request.source_mint)
            check_liquidity(pool, self.request.amount_in, direction, self.config.liquidity_limits)
        except (PricingError, ValueError) as exc:
            logger.warning("Sniper %s: liquidity check blocks firing: %s", self._label, exc)
            return False
        return True

    def _request_for(self, pool: Pool) -> SwapRequest:
        if self.request.pool_id is not None:
            return self.request
        return dataclasses.replace(self.request, pool_id=pool.id)

    async def run(self) -> Optional[SwapResult]:
        """Watch until a swap lands, retries run out or ``stop()`` is called."""
        cfg = self.config
        prev: Optional[Pool] = None
        armed = False
        liquidity_ok = False
        last_liquidity_check: Optional[float] = None
        retries = 0
        self._transition(SniperState.WATCHING, "started")

        while not self.stopped:
            try:
                pool = await self.fetch_state()
            except asyncio.CancelledError:
                raise
            except SnipeError as exc:
                logger.debug("Sniper %s: pool not ready: %s", self._label, exc)
                await self._wait(cfg.monitor_interval)
                continue

            significant = prev is None
            if prev is not None:
                significant = detect_change(prev.state, pool.state, cfg.fire_threshold)
                if significant:
                    logger.info(
                        "Sniper %s: pool %s changed %s %d/%d -> %s %d/%d",
                        self._label,
                        pool.id,
                        prev.state.status.value,
                        prev.state.base_reserve,
                        prev.state.quote_reserve,
                        pool.state.status.value,
                        pool.state.base_reserve,
                        pool.state.quote_reserve,
                    )
                elif detect_change(prev.state, pool.state, cfg.warn_threshold):
                    logger.warning("Sniper %s: reserves drifting on pool %s", self._label, pool.id)

            if pool.is_active:
                now = self._clock()
                if last_liquidity_check is None or now - last_liquidity_check >= cfg.liquidity_check_interval:
                    liquidity_ok = self._liquidity_ok(pool)
                    last_liquidity_check = now

            fire = (significant or armed) and liquidity_ok and self._should_fire(prev, pool)
            prev = pool
            if not fire:
                await self._wait(cfg.monitor_interval)
                continue

            self._transition(SniperState.FIRING, f"pool {pool.id}")
            self.attempts += 1
            try:
                result = await self.executor.execute(self._request_for(pool))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = exc
                if not is_retryable(exc) or retries >= cfg.max_retries:
                    self._transition(SniperState.STOPPED, f"giving up after {self.attempts} attempt(s): {exc}")
                    return None
                delay = cfg.backoff_base * 2 ** retries
                retries += 1
                armed = True
                self._transition(SniperState.BACKOFF, f"retry {retries}/{cfg.max_retries} in {delay:.1f}s: {exc}")
                await self._wait(delay)
                if not self.stopped:
                    self._transition(SniperState.WATCHING)
                continue

            self.result = result
            if result.status.state is ExecutionState.FAILED:
                self._transition(SniperState.STOPPED, f"transaction failed: {result.status.error_message}")
            else:
                self._transition(SniperState.SUCCESS, f"signature {result.signature}")
            return result

        self._transition(SniperState.STOPPED, "stop requested")
        return None


__all__ = [
    "SniperState",
    "SniperEvent",
    "SnipeConfig",
    "SnipingController",
    "detect_change",
    "default_fire_predicate",
]
