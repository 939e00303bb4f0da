"""
Range evaluation and planning for concentrated-liquidity positions.
"""

from lpkeeper import pool_math
from lpkeeper.errors import PolicyViolation
from lpkeeper.models import OpenPlan, Pool, Position


def is_earning_yield(position: Position, pool: Pool) -> bool:
    """True iff the pool tick is strictly inside the position's bounds.

    A position whose boundary equals the current tick is not earning.
    """
    return position.tick_lower < pool.current_tick < position.tick_upper


def check_spaces(spaces: int) -> None:
    if isinstance(spaces, bool) or not isinstance(spaces, int):
        raise PolicyViolation(f"spaces must be an integer, got {spaces!r}")
    if spaces <= 0 or spaces % 2:
        raise PolicyViolation(f"spaces must be a positive even integer, got {spaces}")


def plan_range(pool: Pool, spaces: int) -> tuple[int, int]:
    """Aligned (tick_lower, tick_upper) centred on the tick nearest the pool price.

    The range is ``spaces`` tick spacings wide, half on each side.
    """
    check_spaces(spaces)
    nearest = pool_math.snap_tick(pool.current_tick, pool.tick_spacing)
    half_width = pool.tick_spacing * spaces // 2
    return nearest - half_width, nearest + half_width


def tick_to_price(pool: Pool, tick: int) -> float:
    return pool_math.tick_to_price(tick, pool.base_decimals, pool.quote_decimals)


def price_range(pool: Pool, tick_lower: int, tick_upper: int) -> tuple[float, float]:
    """Display price band for a tick range."""
    return tick_to_price(pool, tick_lower), tick_to_price(pool, tick_upper)


def validate_open_plan(plan: OpenPlan, pool: Pool) -> None:
    """Reject a plan the chain would refuse or that would lose funds."""
    if plan.tick_lower >= plan.tick_upper:
        raise PolicyViolation(
            f"tick_lower {plan.tick_lower} must be below tick_upper {plan.tick_upper}"
        )
    for tick in (plan.tick_lower, plan.tick_upper):
        if not pool_math.is_aligned(tick, pool.tick_spacing):
            raise PolicyViolation(
                f"tick {tick} is not a multiple of tick spacing {pool.tick_spacing}"
            )
        if not pool_math.MIN_TICK <= tick <= pool_math.MAX_TICK:
            raise PolicyViolation(f"tick {tick} is outside the valid tick range")
    if plan.base_amount <= 0:
        raise PolicyViolation(f"base amount must be positive, got {plan.base_amount}")
