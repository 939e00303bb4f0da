import pytest

from lpkeeper import pool_math
from lpkeeper.pool_math import Q96


def test_tick_zero_is_decimal_shift():
    assert pool_math.tick_to_price(0, 18, 6) == pytest.approx(1e12)
    assert pool_math.tick_to_price(0, 6, 6) == pytest.approx(1.0)


def test_tick_to_price_is_monotonic():
    prices = [pool_math.tick_to_price(t) for t in (-200_000, -195_000, -1, 0, 1, 10_000)]
    assert prices == sorted(prices)
    assert len(set(prices)) == len(prices)


def test_sqrt_price_conversion():
    assert pool_math.sqrt_price_x96_to_price(Q96, 18, 6) == pytest.approx(1e12)
    assert pool_math.sqrt_price_x96_to_price(2 * Q96, 6, 6) == pytest.approx(4.0)


@pytest.mark.parametrize(
    "tick, spacing, expected",
    [(0, 10, 0), (14, 10, 10), (16, 10, 20), (-14, 10, -10), (-16, 10, -20), (100, 64, 128)],
)
def test_snap_tick(tick, spacing, expected):
    assert pool_math.snap_tick(tick, spacing) == expected


def test_snap_tick_rejects_bad_spacing():
    with pytest.raises(ValueError):
        pool_math.snap_tick(10, 0)


def test_tick_to_sqrt_price_matches_tick_to_price():
    sqrt_price = pool_math.tick_to_sqrt_price_x96(-195_000)
    assert pool_math.sqrt_price_x96_to_price(sqrt_price) == pytest.approx(
        pool_math.tick_to_price(-195_000), rel=1e-9
    )
    with pytest.raises(ValueError):
        pool_math.tick_to_sqrt_price_x96(pool_math.MAX_TICK + 1)


def test_base_amount_sizes_liquidity_in_range():
    sqrt_price = pool_math.tick_to_sqrt_price_x96(0)
    amount0 = 10**18
    liquidity = pool_math.liquidity_for_base_amount(sqrt_price, -600, 600, amount0)

    need0, need1 = pool_math.amounts_for_liquidity(
        sqrt_price,
        pool_math.tick_to_sqrt_price_x96(-600),
        pool_math.tick_to_sqrt_price_x96(600),
        liquidity,
    )
    assert 0.999 * amount0 < need0 <= amount0
    assert need1 > 0


def test_range_above_price_needs_only_base():
    sqrt_price = pool_math.tick_to_sqrt_price_x96(0)
    liquidity = pool_math.liquidity_for_base_amount(sqrt_price, 100, 700, 10**18)
    need0, need1 = pool_math.amounts_for_liquidity(
        sqrt_price,
        pool_math.tick_to_sqrt_price_x96(100),
        pool_math.tick_to_sqrt_price_x96(700),
        liquidity,
    )
    assert need1 == 0
    assert need0 <= 10**18


def test_range_below_price_cannot_hold_base():
    sqrt_price = pool_math.tick_to_sqrt_price_x96(0)
    with pytest.raises(ValueError):
        pool_math.liquidity_for_base_amount(sqrt_price, -700, -100, 10**18)
