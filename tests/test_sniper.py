import asyncio

import pytest
from solders.keypair import Keypair

from raysnipe.errors import AllAttemptsExhausted, InputError, PoolNotFound, RetryableRpcError, TransactionFailed
from raysnipe.models import ExecutionState, ExecutionStatus, PoolState, PoolStatus, SwapQuote
from raysnipe.pricing import PricingLimits
from raysnipe.sniper import (
    SnipeConfig,
    SniperState,
    SnipingController,
    default_fire_predicate,
    detect_change,
)
from raysnipe.swap import SwapRequest, SwapResult
from raysnipe.transactions import KeypairSigner


class FakeExecutor:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.requests = []

    async def execute(self, request):
        self.calls += 1
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class PoolFeed:
    """Return successive pool snapshots, repeating the last one."""

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.reads = 0

    async def __call__(self):
        self.reads += 1
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, BaseException):
            raise item
        return item.clone()


@pytest.fixture
def waits(monkeypatch):
    recorded = []

    async def fast_wait(self, seconds):
        recorded.append(seconds)
        await asyncio.sleep(0)

    monkeypatch.setattr(SnipingController, "_wait", fast_wait)
    return recorded


def _request(pool, amount=100):
    kp = Keypair()
    return SwapRequest(
        owner=kp.pubkey(),
        signer=KeypairSigner(kp),
        source_mint=pool.base_mint,
        target_mint=pool.quote_mint,
        amount_in=amount,
    )


def _config(**kwargs):
    kwargs.setdefault("liquidity_limits", PricingLimits(min_total_liquidity=0))
    return SnipeConfig(**kwargs)


def _result(pool, state=ExecutionState.CONFIRMED):
    quote = SwapQuote(amount_in=100, amount_out=99, min_amount_out=98, fee_amount=0, price_impact_pct=1.0)
    return SwapResult(quote=quote, status=ExecutionStatus("sig", state), pool=pool)


def _pools(make_pool):
    waiting = make_pool(base_reserve=100, quote_reserve=100, status=PoolStatus.INITIALIZED)
    live = waiting.clone()
    live.state = PoolState(10_000, 10_000, PoolStatus.ACTIVE)
    return waiting, live


def test_fire_then_give_up_after_retries(make_pool, waits):
    waiting, live = _pools(make_pool)
    executor = FakeExecutor(RetryableRpcError("HTTP 429"))
    sniper = SnipingController(executor, PoolFeed(waiting, live), _request(live), _config(max_retries=3))

    assert asyncio.run(sniper.run()) is None
    assert executor.calls == 4
    assert sniper.attempts == 4
    assert sniper.state is SniperState.STOPPED
    assert isinstance(sniper.last_error, RetryableRpcError)
    backoffs = [e for e in sniper.history if e.state is SniperState.BACKOFF]
    assert len(backoffs) == 3
    assert waits == [1.0, 1.0, 2.0, 4.0]


def test_fire_on_activation_and_succeed(make_pool, waits):
    waiting, live = _pools(make_pool)
    executor = FakeExecutor(_result(live))
    sniper = SnipingController(executor, PoolFeed(waiting, waiting, live), _request(live), _config())

    result = asyncio.run(sniper.run())
    assert result is not None and result.signature == "sig"
    assert executor.calls == 1
    assert sniper.state is SniperState.SUCCESS
    states = [e.state for e in sniper.history]
    assert states[0] is SniperState.WATCHING
    assert SniperState.FIRING in states


def test_rate_limited_pool_exhaustion_is_retried(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(AllAttemptsExhausted(2, Exception("HTTP 429 Too Many Requests")), _result(live))
    sniper = SnipingController(executor, PoolFeed(live), _request(live), _config(max_retries=2))

    result = asyncio.run(sniper.run())
    assert result is not None
    assert executor.calls == 2
    assert sniper.state is SniperState.SUCCESS
    assert [e.state for e in sniper.history].count(SniperState.BACKOFF) == 1


def test_fires_against_the_watched_pool(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(_result(live))
    request = _request(live)
    sniper = SnipingController(executor, PoolFeed(live), request, _config())

    asyncio.run(sniper.run())
    assert executor.requests[0].pool_id == live.id
    assert executor.requests[0].amount_in == request.amount_in
    assert request.pool_id is None


def test_failed_transaction_stops(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(_result(live, ExecutionState.FAILED))
    sniper = SnipingController(executor, PoolFeed(live), _request(live), _config())

    asyncio.run(sniper.run())
    assert sniper.state is SniperState.STOPPED
    assert executor.calls == 1


def test_non_retryable_error_stops_at_once(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(TransactionFailed("custom program error: 0x1e"))
    sniper = SnipingController(executor, PoolFeed(live), _request(live), _config())

    assert asyncio.run(sniper.run()) is None
    assert executor.calls == 1
    assert sniper.state is SniperState.STOPPED


def test_missing_pool_keeps_watching(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(_result(live))
    feed = PoolFeed(PoolNotFound("not yet"), PoolNotFound("not yet"), live)
    sniper = SnipingController(executor, feed, _request(live), _config())

    asyncio.run(sniper.run())
    assert feed.reads == 3
    assert executor.calls == 1


def test_liquidity_guard_blocks_firing(make_pool, waits):
    _, live = _pools(make_pool)
    executor = FakeExecutor(_result(live))
    feed = PoolFeed(live)
    sniper = SnipingController(executor, feed, _request(live, amount=5_000), _config(min_amount=1))

    async def run():
        task = asyncio.create_task(sniper.run())
        while feed.reads < 5:
            await asyncio.sleep(0)
        sniper.stop()
        return await task

    assert asyncio.run(run()) is None
    assert executor.calls == 0
    assert sniper.state is SniperState.STOPPED


def test_stop_returns_within_a_tick(make_pool):
    waiting, _ = _pools(make_pool)
    executor = FakeExecutor(RuntimeError("never called"))
    sniper = SnipingController(executor, PoolFeed(waiting), _request(waiting), _config(monitor_interval=1.0))

    async def run():
        task = asyncio.create_task(sniper.run())
        await asyncio.sleep(0.05)
        sniper.stop()
        return await asyncio.wait_for(task, 0.5)

    assert asyncio.run(run()) is None
    assert sniper.stopped
    assert sniper.history[-1].message == "stop requested"


def test_custom_predicate(make_pool, waits):
    _, live = _pools(make_pool)
    seen = []

    def predicate(prev, cur):
        seen.append((prev, cur))
        return prev is not None

    executor = FakeExecutor(_result(live))
    sniper = SnipingController(
        executor, PoolFeed(live), _request(live), _config(predicate=predicate)
    )

    async def run():
        task = asyncio.create_task(sniper.run())
        while len(seen) < 1:
            await asyncio.sleep(0)
        for _ in range(10):
            await asyncio.sleep(0)
        sniper.stop()
        return await task

    asyncio.run(run())
    assert seen[0][0] is None
    assert executor.calls == 0


@pytest.mark.parametrize(
    "prev, cur, expected",
    [
        (PoolState(100, 100, PoolStatus.ACTIVE), PoolState(100, 100, PoolStatus.ACTIVE), False),
        (PoolState(100, 100, PoolStatus.ACTIVE), PoolState(104, 100, PoolStatus.ACTIVE), False),
        (PoolState(100, 100, PoolStatus.ACTIVE), PoolState(106, 100, PoolStatus.ACTIVE), True),
        (PoolState(100, 100, PoolStatus.ACTIVE), PoolState(100, 94, PoolStatus.ACTIVE), True),
        (PoolState(100, 100, PoolStatus.INITIALIZED), PoolState(100, 100, PoolStatus.ACTIVE), True),
        (PoolState(0, 0, PoolStatus.ACTIVE), PoolState(0, 5, PoolStatus.ACTIVE), True),
        (PoolState(0, 0, PoolStatus.ACTIVE), PoolState(0, 0, PoolStatus.ACTIVE), False),
    ],
)
def test_detect_change(prev, cur, expected):
    assert detect_change(prev, cur, 0.05) is expected


def test_default_fire_predicate(make_pool):
    pool = make_pool(base_reserve=10_000, quote_reserve=10_000)
    assert default_fire_predicate(pool, 100, 0.2)
    assert not default_fire_predicate(pool, 5_000, 0.2)

    skewed = make_pool(base_reserve=10_000, quote_reserve=5_000)
    assert not default_fire_predicate(skewed, 100, 0.2)
    assert default_fire_predicate(skewed, 100, 1.0)

    inactive = make_pool(base_reserve=10_000, quote_reserve=10_000, status=PoolStatus.INITIALIZED)
    assert not default_fire_predicate(inactive, 100, 0.2)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"monitor_interval": 0.5},
        {"warn_threshold": 0.1, "fire_threshold": 0.05},
        {"warn_threshold": 0},
        {"ratio_band": -1},
        {"max_retries": -1},
    ],
)
def test_config_validation(kwargs):
    with pytest.raises(InputError):
        SnipeConfig(**kwargs)
