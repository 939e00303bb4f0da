"""
Snapshots and plans passed between the chain client, the policy layer and
the orchestrator. All of them are immutable; a new one is built every cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field

BASE = "base"
QUOTE = "quote"
ASSETS = (BASE, QUOTE)

NO_ACTION = "none"
SWAP = "swap"


@dataclass(frozen=True)
class Pool:
    current_tick: int
    tick_spacing: int
    price: float  # quote per base, human units
    sqrt_price_x96: int = 0
    liquidity: int = 0
    fee_growth_global_0: int = 0
    fee_growth_global_1: int = 0
    base_decimals: int = 18
    quote_decimals: int = 6

    def __post_init__(self):
        if self.tick_spacing <= 0:
            raise ValueError(f"tick_spacing must be positive, got {self.tick_spacing}")


@dataclass(frozen=True)
class Position:
    token_id: int
    tick_lower: int
    tick_upper: int
    liquidity: int = 0
    fee_growth_inside_0_last: int = 0
    fee_growth_inside_1_last: int = 0

    def __post_init__(self):
        if self.tick_lower >= self.tick_upper:
            raise ValueError(
                f"position {self.token_id}: tick_lower {self.tick_lower} "
                f"must be below tick_upper {self.tick_upper}"
            )
        if self.liquidity < 0:
            raise ValueError(f"position {self.token_id}: negative liquidity")


@dataclass(frozen=True)
class TickAccrual:
    """Fee growth recorded on the far side of an initialized tick (Q128)."""

    tick: int
    fee_growth_outside_0: int
    fee_growth_outside_1: int


@dataclass(frozen=True)
class WalletBalance:
    base_amount: float
    quote_amount: float
    total_value: float

    @classmethod
    def from_amounts(cls, base_amount: float, quote_amount: float, price: float) -> "WalletBalance":
        return cls(
            base_amount=base_amount,
            quote_amount=quote_amount,
            total_value=price * base_amount + quote_amount,
        )


@dataclass(frozen=True)
class FeeReport:
    fee_base: float
    fee_quote: float
    fee_value_total: float


@dataclass(frozen=True)
class RebalancePlan:
    action: str = NO_ACTION
    from_asset: str | None = None
    to_asset: str | None = None
    amount: float = 0.0

    def __post_init__(self):
        if self.action == SWAP:
            if self.from_asset not in ASSETS or self.to_asset not in ASSETS:
                raise ValueError(f"unknown swap assets {self.from_asset} -> {self.to_asset}")
            if self.from_asset == self.to_asset:
                raise ValueError("swap needs two different assets")
            if self.amount < 0:
                raise ValueError(f"swap amount must be non-negative, got {self.amount}")
        elif self.action != NO_ACTION:
            raise ValueError(f"unknown rebalance action {self.action!r}")

    @property
    def is_swap(self) -> bool:
        return self.action == SWAP

    @classmethod
    def none(cls) -> "RebalancePlan":
        return cls()

    @classmethod
    def swap(cls, from_asset: str, to_asset: str, amount: float) -> "RebalancePlan":
        return cls(action=SWAP, from_asset=from_asset, to_asset=to_asset, amount=amount)


@dataclass(frozen=True)
class OpenSize:
    should_open: bool
    base_amount: float


@dataclass(frozen=True)
class OpenPlan:
    tick_lower: int
    tick_upper: int
    base_amount: float


@dataclass
class CycleReport:
    """What a single orchestrator cycle did. Mutable while the cycle runs."""

    price: float | None = None
    in_range: list[int] = field(default_factory=list)
    closed: list[int] = field(default_factory=list)
    swap: RebalancePlan | None = None
    opened: OpenPlan | None = None
    events: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
