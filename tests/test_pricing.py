import pytest

from raysnipe.errors import (
    Imbalanced,
    InputError,
    InsufficientLiquidity,
    PriceImpactTooHigh,
    SlippageOutOfRange,
    SwapTooLarge,
    ZeroReserves,
)
from raysnipe.models import SwapDirection
from raysnipe.pricing import (
    PricingEngine,
    PricingLimits,
    SlippageKind,
    SlippagePolicy,
    min_amount_out,
    parse_slippage,
    price_impact_pct,
    quote_out,
)


def _expected_out():
    return (10**9 * 9975 * 181_000 * 10**6) // (1_000 * 10**9 * 10_000 + 10**9 * 9975)


def test_happy_path_quote(make_pool):
    pool = make_pool()
    quote = PricingEngine().quote(pool, 10**9, SwapDirection.BASE_TO_QUOTE, "1.0")
    expected = _expected_out()
    assert quote.amount_out == expected
    # price impact keeps the exact result under the fee-only 180.5475
    assert quote.amount_out == 180_367_583
    assert quote.min_amount_out == expected * 99 // 100
    assert quote.fee_amount == 2_500_000
    assert quote.amount_in == 10**9
    assert 0 < quote.price_impact_pct < 1


def test_half_slippage_bound(make_pool):
    pool = make_pool()
    quote = PricingEngine().quote(pool, 10**9, SwapDirection.BASE_TO_QUOTE, SlippagePolicy.percent(50.0))
    assert quote.min_amount_out == quote.amount_out // 2


def test_price_impact_guard(make_pool):
    pool = make_pool(base_reserve=100 * 10**9, quote_reserve=100 * 10**6)
    with pytest.raises(PriceImpactTooHigh) as err:
        PricingEngine().quote(pool, 50 * 10**9, SwapDirection.BASE_TO_QUOTE, "1.0")
    assert err.value.impact_pct > 10
    assert err.value.limit_pct == 10


def test_quote_to_base_direction(make_pool):
    pool = make_pool()
    quote = PricingEngine().quote(pool, 181 * 10**6, SwapDirection.QUOTE_TO_BASE, "none")
    # ~1 SOL back for 181 USDC minus fee and slippage of the curve
    assert 990_000_000 < quote.amount_out < 1_000_000_000
    assert quote.min_amount_out == 1


def test_amount_must_be_positive(make_pool):
    with pytest.raises(InputError):
        PricingEngine().quote(make_pool(), 0, SwapDirection.BASE_TO_QUOTE, "1.0")


def test_zero_reserves(make_pool):
    pool = make_pool(base_reserve=0)
    with pytest.raises(ZeroReserves):
        PricingEngine().quote(pool, 10, SwapDirection.BASE_TO_QUOTE, "1.0")


def test_swap_too_large(make_pool):
    pool = make_pool(base_reserve=10**7, quote_reserve=10**7, base_decimals=0, quote_decimals=0)
    engine = PricingEngine(PricingLimits(max_impact_pct=50))
    with pytest.raises(SwapTooLarge):
        engine.quote(pool, 2 * 10**6, SwapDirection.BASE_TO_QUOTE, "1.0")


def test_insufficient_liquidity(make_pool):
    pool = make_pool(base_reserve=1_000, quote_reserve=1_000, base_decimals=0, quote_decimals=0)
    with pytest.raises(InsufficientLiquidity):
        PricingEngine().quote(pool, 10, SwapDirection.BASE_TO_QUOTE, "1.0")


def test_imbalance_cap_is_opt_in(make_pool):
    pool = make_pool(base_reserve=10**7, quote_reserve=10**9, base_decimals=0, quote_decimals=0)
    PricingEngine().quote(pool, 1_000, SwapDirection.BASE_TO_QUOTE, "1.0")
    capped = PricingEngine(PricingLimits(max_reserve_imbalance=5))
    with pytest.raises(Imbalanced):
        capped.quote(pool, 1_000, SwapDirection.BASE_TO_QUOTE, "1.0")


def test_fixed_slippage_above_output_is_rejected(make_pool):
    pool = make_pool()
    with pytest.raises(SlippageOutOfRange):
        PricingEngine().quote(pool, 10**9, SwapDirection.BASE_TO_QUOTE, "fixed:999999999999")


@pytest.mark.parametrize(
    "text, kind, value",
    [
        ("none", SlippageKind.NONE, 0.0),
        ("NONE", SlippageKind.NONE, 0.0),
        ("fixed:100", SlippageKind.FIXED, 100.0),
        ("1.0", SlippageKind.PERCENT, 1.0),
        ("2.5%", SlippageKind.PERCENT, 2.5),
        (0.5, SlippageKind.PERCENT, 0.5),
    ],
)
def test_parse_slippage(text, kind, value):
    policy = parse_slippage(text)
    assert policy.kind is kind
    assert policy.value == value


@pytest.mark.parametrize("text", ["", "abc", "fixed:x", None])
def test_parse_slippage_rejects_garbage(text):
    with pytest.raises(InputError):
        parse_slippage(text)


@pytest.mark.parametrize("text", ["0", "150", "-1", "fixed:-5"])
def test_parse_slippage_out_of_range(text):
    with pytest.raises(SlippageOutOfRange):
        parse_slippage(text)


@pytest.mark.parametrize("bps", [0, 1, 50, 100, 5_000, 10_000])
def test_min_amount_out_matches_bps(bps):
    amount_out = 180_590_000
    expected = max(1, amount_out * (10_000 - bps) // 10_000)
    assert min_amount_out(amount_out, SlippagePolicy.from_bps(bps)) == expected


def test_min_amount_out_is_never_zero():
    assert min_amount_out(0, SlippagePolicy.percent(1)) == 1
    assert min_amount_out(1, SlippagePolicy.percent(99)) == 1
    assert min_amount_out(500, SlippagePolicy.none()) == 1
    assert min_amount_out(500, SlippagePolicy.fixed(0)) == 1


def test_from_bps_bounds():
    assert SlippagePolicy.from_bps(150).bps == 150
    with pytest.raises(SlippageOutOfRange):
        SlippagePolicy.from_bps(10_001)


@pytest.mark.parametrize("amount_in", [1, 1_000, 250_000, 5_000_000])
def test_constant_product_never_decreases(amount_in):
    x, y = 10_000_000, 7_000_000
    out, _ = quote_out(amount_in, x, y, 25)
    assert 0 <= out < y
    assert (x + amount_in) * (y - out) >= x * y


def test_price_impact_grows_with_size():
    small = price_impact_pct(1_000, 10**9, 10**9, 25)
    large = price_impact_pct(10**8, 10**9, 10**9, 25)
    assert 0 < small < large
    with pytest.raises(ZeroReserves):
        price_impact_pct(1, 0, 10)
