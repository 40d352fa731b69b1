import pytest

from raysnipe.errors import InputError
from raysnipe.priority import (
    DEFAULT_UNITS,
    EXTREME_HEAP_BYTES,
    ComputeBudget,
    PriorityProfile,
    priority_fee_micro_lamports,
    profile_for_fee,
    sol_to_lamports,
)


def test_fee_conversion_vector():
    assert priority_fee_micro_lamports(0.000005, 200_000) == 25_000


def test_zero_fee_has_no_price():
    assert priority_fee_micro_lamports(0, 200_000) == 0
    assert priority_fee_micro_lamports(0, 0) == 0


def test_fee_requires_units():
    with pytest.raises(InputError):
        priority_fee_micro_lamports(0.001, 0)


def test_sol_to_lamports():
    assert sol_to_lamports(1) == 1_000_000_000
    assert sol_to_lamports(0.000005) == 5_000
    with pytest.raises(InputError):
        sol_to_lamports(-0.1)
    with pytest.raises(InputError):
        sol_to_lamports(float("nan"))


@pytest.mark.parametrize(
    "fee, profile",
    [
        (0.0, PriorityProfile.LOW),
        (0.000005, PriorityProfile.LOW),
        (0.00001, PriorityProfile.MEDIUM),
        (0.00005, PriorityProfile.HIGH),
        (0.001, PriorityProfile.EXTREME),
    ],
)
def test_profiles(fee, profile):
    assert profile_for_fee(fee) is profile


def test_budget_instructions():
    budget = ComputeBudget.for_fee(0.000005)
    assert budget.unit_limit == DEFAULT_UNITS
    assert budget.micro_lamports == 25_000
    assert budget.heap_bytes == 0
    assert budget.priority_fee_lamports == 5_000
    ixs = budget.instructions()
    assert [bytes(ix.data)[0] for ix in ixs] == [2, 3]


def test_extreme_profile_requests_heap():
    budget = ComputeBudget.for_fee(0.01, 1_000_000)
    assert budget.heap_bytes == EXTREME_HEAP_BYTES
    ixs = budget.instructions()
    assert [bytes(ix.data)[0] for ix in ixs] == [2, 3, 1]


def test_empty_budget_emits_nothing():
    assert ComputeBudget(unit_limit=0).instructions() == []
