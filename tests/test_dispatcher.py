import asyncio

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from raysnipe.codec import WSOL_MINT
from raysnipe.dispatcher import TaskDispatcher
from raysnipe.errors import PoolNotFound
from raysnipe.models import ExecutionState, ExecutionStatus, SwapQuote
from raysnipe.swap import SwapResult
from raysnipe.tasks import Task
from raysnipe.transactions import KeypairSigner

TOKEN = Pubkey.new_unique()


class FakeExecutor:
    def __init__(self, *, balance=0, delay=0.0, error=None):
        self.balance = balance
        self.delay = delay
        self.error = error
        self.requests = []
        self.active = 0
        self.peak = 0

    async def execute(self, request):
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if self.error is not None:
            raise self.error
        quote = SwapQuote(
            amount_in=request.amount_in,
            amount_out=request.amount_in * 2,
            min_amount_out=request.amount_in,
            fee_amount=0,
            price_impact_pct=0.1,
        )
        status = ExecutionStatus(f"sig-{len(self.requests)}", ExecutionState.CONFIRMED)
        return SwapResult(quote=quote, status=status, pool=None)

    async def token_balance(self, owner, mint):
        return self.balance


@pytest.fixture
def wallets():
    kp = Keypair()
    return {"main": (kp.pubkey(), KeypairSigner(kp))}


def _task(name="t1", **kwargs):
    fields = dict(
        task_name=name,
        wallet="main",
        source_token=WSOL_MINT,
        target_token=TOKEN,
        amount_in=1_000,
    )
    fields.update(kwargs)
    return Task(**fields)


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def test_buy_then_autosell_half(wallets):
    executor = FakeExecutor(balance=1_000)

    async def run():
        dispatcher = TaskDispatcher(executor, wallets, workers=2)
        results = await dispatcher.run([_task(autosell_percent=50, autosell_delay=0.01)])
        return results, _drain(dispatcher.results)

    results, queued = asyncio.run(run())
    assert [r.action for r in results] == ["buy", "sell"]
    buy, sell = results
    assert buy.status == "confirmed"
    assert buy.amount_out == 2_000
    assert buy.signature == "sig-1"
    assert sell.amount_in == 500
    assert sell.pair == f"{TOKEN}/{WSOL_MINT}"
    assert executor.requests[1].source_mint == TOKEN
    assert executor.requests[1].target_mint == WSOL_MINT
    assert queued == results


def test_autosell_without_balance(wallets):
    executor = FakeExecutor(balance=0)
    results = asyncio.run(TaskDispatcher(executor, wallets).run([_task(autosell_percent=100)]))
    assert [r.status for r in results] == ["confirmed", "failed"]
    assert results[1].error_message == "no balance"
    assert len(executor.requests) == 1


def test_unknown_wallet(wallets):
    executor = FakeExecutor()
    results = asyncio.run(TaskDispatcher(executor, wallets).run([_task(wallet="ghost")]))
    assert results[0].status == "failed"
    assert results[0].error_message == "unknown wallet 'ghost'"
    assert executor.requests == []


def test_swap_error_becomes_failed_result(wallets):
    executor = FakeExecutor(error=PoolNotFound("no pool for pair", stage="select"))
    results = asyncio.run(TaskDispatcher(executor, wallets).run([_task(autosell_percent=50)]))
    assert len(results) == 1
    assert results[0].status == "failed"
    assert "no pool for pair" in results[0].error_message


def test_unexpected_error_is_reported(wallets):
    executor = FakeExecutor(error=RuntimeError("boom"))
    results = asyncio.run(TaskDispatcher(executor, wallets).run([_task()]))
    assert results[0].error_message == "RuntimeError: boom"


def test_task_deadline(wallets):
    executor = FakeExecutor(delay=1.0)
    results = asyncio.run(TaskDispatcher(executor, wallets).run([_task(deadline_seconds=0.05)]))
    assert results[0].status == "failed"
    assert results[0].error_message == "deadline of 0.05s exceeded"
    assert executor.requests[0].deadline is not None


def test_worker_bound(wallets):
    executor = FakeExecutor(delay=0.01)
    tasks = [_task(f"t{i}") for i in range(6)]
    results = asyncio.run(TaskDispatcher(executor, wallets, workers=2).run(tasks))
    assert len(results) == 6
    assert executor.peak == 2
    assert {r.task_name for r in results} == {f"t{i}" for i in range(6)}


def test_cancel_reports_in_flight_tasks(wallets):
    executor = FakeExecutor(delay=10.0)

    async def run():
        dispatcher = TaskDispatcher(executor, wallets, workers=4)
        job = asyncio.create_task(dispatcher.run([_task("a"), _task("b")]))
        while len(executor.requests) < 2:
            await asyncio.sleep(0)
        dispatcher.cancel()
        return await asyncio.wait_for(job, 1.0)

    results = asyncio.run(run())
    assert sorted(r.task_name for r in results) == ["a", "b"]
    assert {r.status for r in results} == {"cancelled"}


def test_cancel_during_autosell_delay_keeps_the_buy(wallets):
    executor = FakeExecutor(balance=1_000)

    async def run():
        dispatcher = TaskDispatcher(executor, wallets, workers=2)
        job = asyncio.create_task(dispatcher.run([_task(autosell_percent=50, autosell_delay=30)]))
        while dispatcher.results.empty():
            await asyncio.sleep(0)
        dispatcher.cancel()
        return await asyncio.wait_for(job, 1.0)

    results = asyncio.run(run())
    assert [(r.action, r.status) for r in results] == [("buy", "confirmed"), ("sell", "cancelled")]
    assert results[1].pair == f"{TOKEN}/{WSOL_MINT}"
    assert results[1].amount_in == 0
    assert len(executor.requests) == 1


def test_request_carries_task_settings(wallets):
    executor = FakeExecutor()
    task = _task(priority_fee_sol=0.0001, compute_units=0, wait_confirmation=False)
    asyncio.run(TaskDispatcher(executor, wallets, max_retries=1, simulate=True).run([task]))
    request = executor.requests[0]
    assert request.priority_fee_sol == 0.0001
    assert request.compute_unit_limit == 0
    assert request.wait_confirmation is False
    assert request.max_retries == 1
    assert request.simulate is True
    assert request.task_name == "t1"
    assert request.deadline is None


def test_workers_must_be_positive(wallets):
    with pytest.raises(ValueError):
        TaskDispatcher(FakeExecutor(), wallets, workers=0)
