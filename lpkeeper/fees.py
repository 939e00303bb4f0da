"""
Fee accrual for a position, valued in the quote currency.
"""

from lpkeeper import pool_math
from lpkeeper.models import FeeReport, Pool, Position, TickAccrual


def compute_fees(
    position: Position,
    pool: Pool,
    tick_lower_data: TickAccrual,
    tick_upper_data: TickAccrual,
) -> FeeReport:
    """Fees owed to ``position`` since its last checkpoint.

    Only reports; collecting happens when the position is closed.
    """
    if tick_lower_data.tick != position.tick_lower or tick_upper_data.tick != position.tick_upper:
        raise ValueError(
            f"accrual data for ticks [{tick_lower_data.tick}, {tick_upper_data.tick}] "
            f"does not bracket position {position.token_id} "
            f"[{position.tick_lower}, {position.tick_upper}]"
        )

    inside_0 = pool_math.fee_growth_inside(
        pool.current_tick,
        position.tick_lower,
        position.tick_upper,
        tick_lower_data.fee_growth_outside_0,
        tick_upper_data.fee_growth_outside_0,
        pool.fee_growth_global_0,
    )
    inside_1 = pool_math.fee_growth_inside(
        pool.current_tick,
        position.tick_lower,
        position.tick_upper,
        tick_lower_data.fee_growth_outside_1,
        tick_upper_data.fee_growth_outside_1,
        pool.fee_growth_global_1,
    )

    raw_base = pool_math.fees_owed(position.liquidity, inside_0, position.fee_growth_inside_0_last)
    raw_quote = pool_math.fees_owed(position.liquidity, inside_1, position.fee_growth_inside_1_last)

    fee_base = raw_base / 10**pool.base_decimals
    fee_quote = raw_quote / 10**pool.quote_decimals
    return FeeReport(
        fee_base=fee_base,
        fee_quote=fee_quote,
        fee_value_total=pool.price * fee_base + fee_quote,
    )
