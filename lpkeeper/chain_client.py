"""
Chain access used by the agent. ``ChainClient`` is the interface the
orchestrator depends on; ``Web3ChainClient`` implements it for a Uniswap V4
pool by composing a StateReader (reads) and an LPManager (transactions).
"""

import logging
from typing import Protocol

from web3 import Web3

from lpkeeper import config as chain_config
from lpkeeper.errors import PolicyViolation
from lpkeeper.lp_manager import LPManager
from lpkeeper.models import OpenPlan, Pool, Position, TickAccrual, WalletBalance
from lpkeeper.state_reader import StateReader

logger = logging.getLogger(__name__)


class ChainClient(Protocol):
    owner: str

    def setup(self) -> None: ...

    def get_pool(self) -> Pool | None: ...

    def get_positions(self, owner: str) -> list[Position]: ...

    def get_tick_boundary_accrual(self, tick: int) -> TickAccrual: ...

    def get_wallet_balance(self, price: float) -> WalletBalance: ...

    def open_position(self, plan: OpenPlan, pool: Pool) -> str: ...

    def close_position(self, token_id: int) -> str: ...

    def swap(self, from_asset: str, to_asset: str, amount: float, price: float | None = None) -> str: ...

    def get_liquidity_distribution(self, pool: Pool, tick_lower: int, tick_upper: int) -> list[tuple[float, int]]: ...


class Web3ChainClient:
    """ChainClient backed by a JSON-RPC endpoint and a local signing key."""

    def __init__(self, strategy, w3: Web3 | None = None):
        if not strategy.wallet_secret:
            raise PolicyViolation("PRIVATE_KEY is required to run the agent")

        if w3 is None:
            logger.info("Connecting to RPC: %s", strategy.rpc_endpoint)
            w3 = Web3(Web3.HTTPProvider(strategy.rpc_endpoint))
        self.w3 = w3
        if not self.w3.is_connected():
            raise ConnectionError(f"Cannot connect to RPC at {strategy.rpc_endpoint}")
        chain_id = self.w3.eth.chain_id
        if chain_id != chain_config.EXPECTED_CHAIN_ID:
            raise ConnectionError(
                f"RPC reports chain id {chain_id}, expected {chain_config.EXPECTED_CHAIN_ID}"
            )
        logger.info("Connected. Chain ID: %d", chain_id)

        self.account = self.w3.eth.account.from_key(strategy.wallet_secret)
        self.owner = self.account.address
        logger.info("Agent address: %s", self.owner)

        self.state_reader = StateReader(self.w3, strategy)
        self.lp_manager = LPManager(self.w3, self.account, strategy)

    def setup(self):
        self.lp_manager.setup_approvals()

    def get_pool(self) -> Pool | None:
        return self.state_reader.get_pool()

    def get_positions(self, owner: str) -> list[Position]:
        return self.state_reader.get_positions(
            owner, self.lp_manager.load_positions(), prune=self.lp_manager.remove_position
        )

    def get_tick_boundary_accrual(self, tick: int) -> TickAccrual:
        return self.state_reader.get_tick_boundary_accrual(tick)

    def get_wallet_balance(self, price: float) -> WalletBalance:
        return self.state_reader.get_wallet_balance(self.owner, price)

    def open_position(self, plan: OpenPlan, pool: Pool) -> str:
        return self.lp_manager.mint_position(plan, pool)["tx_hash"]

    def close_position(self, token_id: int) -> str:
        return self.lp_manager.close_position(token_id)["tx_hash"]

    def swap(self, from_asset: str, to_asset: str, amount: float, price: float | None = None) -> str:
        return self.lp_manager.swap(from_asset, to_asset, amount, price)["tx_hash"]

    def get_liquidity_distribution(self, pool: Pool, tick_lower: int, tick_upper: int):
        return self.state_reader.get_liquidity_distribution(pool, tick_lower, tick_upper)
