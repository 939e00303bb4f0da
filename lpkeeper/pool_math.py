"""
Concentrated-liquidity pool math: tick/price conversion, tick alignment,
fee-growth accounting and liquidity sizing.

All on-chain quantities are raw integers (sqrtPriceX96, Q128 fee growth,
token base units). Human prices are quote per base, e.g. USDC per ETH.
"""

from decimal import Decimal, getcontext

getcontext().prec = 40

Q96 = 2**96
Q128 = 2**128
UINT256_MOD = 2**256

MIN_TICK = -887272
MAX_TICK = 887272

TICK_BASE = Decimal("1.0001")


def _decimal_shift(base_decimals: int, quote_decimals: int) -> Decimal:
    return Decimal(10) ** (base_decimals - quote_decimals)


def sqrt_price_x96_to_price(
    sqrt_price_x96: int, base_decimals: int = 18, quote_decimals: int = 6
) -> float:
    """Derive the human price from sqrtPriceX96.

    Formula: price = (sqrtPriceX96 / 2^96)^2 * 10^(base_decimals - quote_decimals)
    """
    sqrt_price = Decimal(sqrt_price_x96)
    q96 = Decimal(Q96)
    return float((sqrt_price / q96) ** 2 * _decimal_shift(base_decimals, quote_decimals))


def tick_to_price(tick: int, base_decimals: int = 18, quote_decimals: int = 6) -> float:
    """Convert a tick value to a human-readable price.

    Formula: price = 1.0001^tick * 10^(base_decimals - quote_decimals)
    """
    price = TICK_BASE ** tick * _decimal_shift(base_decimals, quote_decimals)
    return float(price)


def snap_tick(tick: int, tick_spacing: int) -> int:
    """Snap a tick value to the nearest multiple of tick_spacing."""
    if tick_spacing <= 0:
        raise ValueError(f"tick_spacing must be positive, got {tick_spacing}")
    return round(tick / tick_spacing) * tick_spacing


def is_aligned(tick: int, tick_spacing: int) -> bool:
    return tick % tick_spacing == 0


def tick_to_sqrt_price_x96(tick: int) -> int:
    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")
    return int((TICK_BASE ** tick).sqrt() * Decimal(Q96))


# ---------------------------------------------------------------------------
# Fee growth
# ---------------------------------------------------------------------------


def fee_growth_inside(
    current_tick: int,
    tick_lower: int,
    tick_upper: int,
    lower_outside: int,
    upper_outside: int,
    global_growth: int,
) -> int:
    """Fee growth per unit of liquidity accumulated inside [tick_lower, tick_upper).

    Outside values flip meaning depending on which side of the tick the
    price currently sits. Arithmetic wraps modulo 2^256 like the contract.
    """
    if current_tick >= tick_lower:
        below = lower_outside
    else:
        below = global_growth - lower_outside
    if current_tick < tick_upper:
        above = upper_outside
    else:
        above = global_growth - upper_outside
    return (global_growth - below - above) % UINT256_MOD


def fees_owed(liquidity: int, inside_now: int, inside_last: int) -> int:
    """Raw token amount earned since the position's last checkpoint."""
    delta = (inside_now - inside_last) % UINT256_MOD
    return (liquidity * delta) // Q128


# ---------------------------------------------------------------------------
# Liquidity sizing
# ---------------------------------------------------------------------------


def liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    intermediate = sqrt_a * sqrt_b // Q96
    return amount0 * intermediate // (sqrt_b - sqrt_a)


def amounts_for_liquidity(
    sqrt_price: int, sqrt_a: int, sqrt_b: int, liquidity: int
) -> tuple[int, int]:
    """Token amounts (amount0, amount1) backing ``liquidity`` at ``sqrt_price``."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a

    if sqrt_price <= sqrt_a:
        amount0 = liquidity * Q96 * (sqrt_b - sqrt_a) // sqrt_b // sqrt_a
        return amount0, 0
    if sqrt_price < sqrt_b:
        amount0 = liquidity * Q96 * (sqrt_b - sqrt_price) // sqrt_b // sqrt_price
        amount1 = liquidity * (sqrt_price - sqrt_a) // Q96
        return amount0, amount1
    return 0, liquidity * (sqrt_b - sqrt_a) // Q96


def liquidity_for_base_amount(
    sqrt_price: int, tick_lower: int, tick_upper: int, amount0: int
) -> int:
    """Liquidity a range can hold when ``amount0`` of the base token is committed."""
    sqrt_a = tick_to_sqrt_price_x96(tick_lower)
    sqrt_b = tick_to_sqrt_price_x96(tick_upper)
    if sqrt_price >= sqrt_b:
        raise ValueError(
            f"range [{tick_lower}, {tick_upper}] is below the current price; "
            "it holds no base token"
        )
    return liquidity_for_amount0(max(sqrt_price, sqrt_a), sqrt_b, amount0)
