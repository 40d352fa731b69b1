import pytest
from solders.pubkey import Pubkey

from raysnipe.codec import WSOL_MINT
from raysnipe.errors import InputError
from raysnipe.pricing import SlippageKind
from raysnipe.priority import DEFAULT_UNITS
from raysnipe.tasks import TradeResult, task_from_record

TOKEN = Pubkey.new_unique()


def _record(**overrides):
    record = {
        "taskName": "buy-1",
        "walletRef": "main",
        "sourceToken": str(WSOL_MINT),
        "targetToken": str(TOKEN),
        "amountIn": 1_000_000,
        "slippage": "2.5",
        "priorityFee": 0.00001,
        "computeUnits": 400_000,
    }
    record.update(overrides)
    return record


def test_camel_case_record():
    task = task_from_record(_record(autosellPercent=50, autosellDelaySeconds=3, deadlineSeconds=20))
    assert task.task_name == "buy-1"
    assert task.wallet == "main"
    assert task.source_token == WSOL_MINT
    assert task.target_token == TOKEN
    assert task.amount_in == 1_000_000
    assert task.slippage.kind is SlippageKind.PERCENT
    assert task.slippage.value == 2.5
    assert task.priority_fee_sol == 0.00001
    assert task.compute_units == 400_000
    assert task.autosell.percent == 50
    assert task.autosell.delay == 3
    assert task.deadline_seconds == 20
    assert task.wait_confirmation is True
    assert task.pair == f"{WSOL_MINT}/{TOKEN}"


def test_snake_case_record_and_defaults():
    task = task_from_record(
        {
            "task_name": "t",
            "wallet": "w",
            "source_token": str(WSOL_MINT),
            "target_token": str(TOKEN),
            "amount_in": "42",
            "wait_confirmation": "no",
        },
        default_slippage="fixed:10",
    )
    assert task.amount_in == 42
    assert task.slippage.kind is SlippageKind.FIXED
    assert task.compute_units == DEFAULT_UNITS
    assert task.autosell is None
    assert task.deadline_seconds is None
    assert task.wait_confirmation is False


def test_zero_compute_units_is_kept():
    assert task_from_record(_record(computeUnits=0)).compute_units == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"walletRef": ""},
        {"sourceToken": "nope"},
        {"targetToken": str(WSOL_MINT)},
        {"amountIn": 0},
        {"amountIn": 1.5},
        {"amountIn": True},
        {"amountIn": "lots"},
        {"slippage": "200"},
        {"priorityFee": -1},
        {"computeUnits": -5},
        {"autosellPercent": 0},
        {"autosellPercent": 150},
        {"autosellDelaySeconds": -1},
        {"deadlineSeconds": -3},
    ],
)
def test_invalid_records(overrides):
    with pytest.raises(InputError):
        task_from_record(_record(**overrides))


def test_missing_amount():
    record = _record()
    del record["amountIn"]
    with pytest.raises(InputError):
        task_from_record(record)


def test_trade_result_record():
    ok = TradeResult(
        wallet="main",
        pair="a/b",
        action="buy",
        amount_in=10,
        status="confirmed",
        amount_out=20,
        signature="sig",
        task_name="t",
        timestamp=1.0,
    )
    assert ok.ok
    assert ok.to_record() == {
        "timestamp": 1.0,
        "taskName": "t",
        "wallet": "main",
        "pair": "a/b",
        "action": "buy",
        "amountIn": 10,
        "amountOut": 20,
        "signature": "sig",
        "status": "confirmed",
    }

    failed = TradeResult(wallet="main", pair="a/b", action="buy", amount_in=10, status="failed", error_message="x")
    assert not failed.ok
    assert failed.to_record()["errorMessage"] == "x"
