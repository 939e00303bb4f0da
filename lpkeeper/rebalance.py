"""
Wallet rebalance and position sizing policy.

The wallet is kept near a 50/50 value split between the base and quote
asset. Swaps only fire once the base share leaves the [1/3, 2/3] band, so
small drifts around the target never trigger a trade.
"""

from lpkeeper.errors import PolicyViolation
from lpkeeper.models import BASE, QUOTE, OpenSize, RebalancePlan, WalletBalance

BALANCED_RATIO = 0.5
UPPER_TRIGGER = 2 / 3
LOWER_TRIGGER = 1 / 3


def balance_ratio(balance: WalletBalance, price: float) -> float | None:
    """Fraction of wallet value held in the base asset, None for an empty wallet."""
    base_value = balance.base_amount * price
    total = base_value + balance.quote_amount
    if total <= 0:
        return None
    return base_value / total


def _check_inputs(balance: WalletBalance, price: float) -> None:
    if price <= 0:
        raise PolicyViolation(f"price must be positive, got {price}")
    if balance.base_amount < 0 or balance.quote_amount < 0:
        raise PolicyViolation(
            f"negative wallet balance: base={balance.base_amount} quote={balance.quote_amount}"
        )


def decide_swap(
    balance: WalletBalance, price: float, swap_min: float | None = None
) -> RebalancePlan:
    """Swap needed to pull the wallet back toward 50/50, if any.

    ``swap_min`` is compared against the swap amount, in units of the asset sold.
    """
    _check_inputs(balance, price)
    ratio = balance_ratio(balance, price)
    if ratio is None:
        return RebalancePlan.none()

    if ratio > UPPER_TRIGGER:
        plan = RebalancePlan.swap(BASE, QUOTE, (ratio - BALANCED_RATIO) * balance.base_amount)
    elif ratio < LOWER_TRIGGER:
        plan = RebalancePlan.swap(QUOTE, BASE, (BALANCED_RATIO - ratio) * balance.quote_amount)
    else:
        return RebalancePlan.none()

    if plan.amount <= 0:
        return RebalancePlan.none()
    if swap_min is not None and plan.amount < swap_min:
        return RebalancePlan.none()
    return plan


def desired_base_amount(
    balance: WalletBalance, amount_base: float | None, min_base_on_wallet: float
) -> float:
    """Configured open size, or half of the base held above the reserve."""
    if amount_base is not None:
        return amount_base
    return max(balance.base_amount - min_base_on_wallet, 0.0) / 2


def plan_open_size(
    balance: WalletBalance, desired_base_amount: float, min_base_on_wallet: float
) -> OpenSize:
    """Open only if the reserve is still above ``min_base_on_wallet`` afterwards."""
    if desired_base_amount < 0:
        raise PolicyViolation(f"desired base amount must be non-negative, got {desired_base_amount}")
    if min_base_on_wallet < 0:
        raise PolicyViolation(f"minimum base reserve must be non-negative, got {min_base_on_wallet}")

    if desired_base_amount == 0:
        return OpenSize(should_open=False, base_amount=0.0)
    if balance.base_amount - desired_base_amount > min_base_on_wallet:
        return OpenSize(should_open=True, base_amount=desired_base_amount)
    return OpenSize(should_open=False, base_amount=0.0)
