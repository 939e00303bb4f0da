import sys
from pathlib import Path

import pytest

# Make the package importable without installing it
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from lpkeeper.config import StrategyConfig  # noqa: E402
from lpkeeper.errors import DataFetchError, ExecutionError  # noqa: E402
from lpkeeper.models import Pool, TickAccrual, WalletBalance  # noqa: E402


class FakeChainClient:
    """In-memory ChainClient. Balances are handed out in order, the last one repeats."""

    def __init__(self, pool, positions=(), balances=((1.0, 100.0),), accruals=None):
        self.owner = "0x00000000000000000000000000000000000000aa"
        self.pool = pool
        self.positions = list(positions)
        self.balances = list(balances)
        self.accruals = dict(accruals or {})
        self.fail_close = set()
        self.fail_accrual = set()
        self.fail_swap = False
        self.fail_balance = False
        self.on_get_pool = None

        self.setup_calls = 0
        self.closed = []
        self.swaps = []
        self.opened = []

    def setup(self):
        self.setup_calls += 1

    def get_pool(self):
        if self.on_get_pool is not None:
            self.on_get_pool()
        return self.pool

    def get_positions(self, owner):
        assert owner == self.owner
        return list(self.positions)

    def get_tick_boundary_accrual(self, tick):
        if tick in self.fail_accrual:
            raise DataFetchError(f"tick {tick} unavailable")
        return self.accruals.get(tick, TickAccrual(tick, 0, 0))

    def get_wallet_balance(self, price):
        if self.fail_balance:
            raise DataFetchError("balance rpc down")
        amounts = self.balances.pop(0) if len(self.balances) > 1 else self.balances[0]
        return WalletBalance.from_amounts(amounts[0], amounts[1], price)

    def open_position(self, plan, pool):
        self.opened.append(plan)
        return f"0xopen{len(self.opened)}"

    def close_position(self, token_id):
        if token_id in self.fail_close:
            raise ExecutionError(f"close {token_id} reverted", "0xdead")
        self.closed.append(token_id)
        return f"0xclose{token_id}"

    def swap(self, from_asset, to_asset, amount, price=None):
        if self.fail_swap:
            raise ExecutionError("swap reverted", "0xbeef")
        self.swaps.append((from_asset, to_asset, amount, price))
        return "0xswap"

    def get_liquidity_distribution(self, pool, tick_lower, tick_upper):
        return [(99.0, 5), (100.0, 10), (101.0, 2)]


class ListSink:
    def __init__(self, fail=False):
        self.records = []
        self.fail = fail
        self.closed = False

    def save(self, record):
        if self.fail:
            raise OSError("sink unavailable")
        self.records.append(record)

    def close(self):
        self.closed = True


@pytest.fixture
def strategy():
    return StrategyConfig(
        spaces=10,
        tick_spacing=10,
        min_base_on_wallet=0.2,
        amount_base=0.5,
        trade_interval=0.01,
    )


@pytest.fixture
def pool():
    return Pool(current_tick=1000, tick_spacing=10, price=100.0)


@pytest.fixture
def sink():
    return ListSink()
