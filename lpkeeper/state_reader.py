"""
StateReader — reads Uniswap V4 pool, position and wallet state on Base.
"""

import json
import logging
import os

from web3 import Web3
from web3.exceptions import ContractLogicError

from lpkeeper import config as chain_config
from lpkeeper import pool_math
from lpkeeper.errors import DataFetchError, PositionGone
from lpkeeper.models import Pool, Position, TickAccrual, WalletBalance

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


class StateReader:
    """Reads Uniswap V4 pool and position state via the StateView contract."""

    def __init__(self, w3: Web3, strategy):
        self.w3 = w3
        self.strategy = strategy
        self.tick_spacing = strategy.tick_spacing

        pool_id = strategy.pool_id or chain_config.compute_pool_id(strategy.tick_spacing)
        self.pool_id = bytes.fromhex(pool_id[2:])

        self.state_view = w3.eth.contract(
            address=Web3.to_checksum_address(chain_config.STATE_VIEW),
            abi=_load_abi("state_view.json"),
        )
        self.position_manager = w3.eth.contract(
            address=Web3.to_checksum_address(chain_config.POSITION_MANAGER),
            abi=_load_abi("position_manager.json"),
        )
        self.usdc = w3.eth.contract(
            address=Web3.to_checksum_address(chain_config.USDC_ADDRESS),
            abi=_load_abi("erc20.json"),
        )

    # ------------------------------------------------------------------
    # Raw StateView reads
    # ------------------------------------------------------------------

    def get_slot0(self) -> dict:
        """Get pool slot0 data: sqrtPriceX96, tick, protocolFee, lpFee."""
        try:
            result = self.state_view.functions.getSlot0(self.pool_id).call()
            return {
                "sqrtPriceX96": result[0],
                "tick": result[1],
                "protocolFee": result[2],
                "lpFee": result[3],
            }
        except Exception as e:
            logger.error("Failed to get slot0: %s", e)
            raise DataFetchError(f"slot0 unavailable: {e}") from e

    def get_pool_liquidity(self) -> int:
        """Get current in-range liquidity for the pool."""
        try:
            return self.state_view.functions.getLiquidity(self.pool_id).call()
        except Exception as e:
            logger.error("Failed to get pool liquidity: %s", e)
            raise DataFetchError(f"pool liquidity unavailable: {e}") from e

    def get_fee_growth_globals(self) -> tuple[int, int]:
        try:
            result = self.state_view.functions.getFeeGrowthGlobals(self.pool_id).call()
            return (result[0], result[1])
        except Exception as e:
            logger.error("Failed to get fee growth globals: %s", e)
            raise DataFetchError(f"fee growth globals unavailable: {e}") from e

    def get_position_info(
        self, owner: str, tick_lower: int, tick_upper: int, salt: bytes = b""
    ) -> dict:
        """Get position info for a specific owner and tick range.

        Returns liquidity, feeGrowthInside0LastX128, feeGrowthInside1LastX128.
        """
        try:
            # salt must be bytes32, left-padded like a uint256 token id
            salt_bytes32 = salt.rjust(32, b"\x00") if len(salt) < 32 else salt[:32]
            result = self.state_view.functions.getPositionInfo(
                self.pool_id,
                Web3.to_checksum_address(owner),
                tick_lower,
                tick_upper,
                salt_bytes32,
            ).call()
            return {
                "liquidity": result[0],
                "feeGrowthInside0LastX128": result[1],
                "feeGrowthInside1LastX128": result[2],
            }
        except Exception as e:
            logger.error("Failed to get position info: %s", e)
            raise DataFetchError(f"position info unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_pool(self) -> Pool | None:
        """Current pool snapshot, or None when the pool is not initialized."""
        slot0 = self.get_slot0()
        if slot0["sqrtPriceX96"] == 0:
            logger.warning("Pool 0x%s is not initialized", self.pool_id.hex())
            return None

        liquidity = self.get_pool_liquidity()
        growth_0, growth_1 = self.get_fee_growth_globals()
        return Pool(
            current_tick=slot0["tick"],
            tick_spacing=self.tick_spacing,
            price=pool_math.sqrt_price_x96_to_price(
                slot0["sqrtPriceX96"], chain_config.ETH_DECIMALS, chain_config.USDC_DECIMALS
            ),
            sqrt_price_x96=slot0["sqrtPriceX96"],
            liquidity=liquidity,
            fee_growth_global_0=growth_0,
            fee_growth_global_1=growth_1,
            base_decimals=chain_config.ETH_DECIMALS,
            quote_decimals=chain_config.USDC_DECIMALS,
        )

    def get_position(self, owner: str, record: dict) -> Position | None:
        """Read one registered position. None if it is not ours.

        Raises PositionGone when the token no longer exists on chain.
        """
        token_id = int(record["token_id"])
        pm = self.position_manager
        try:
            nft_owner = pm.functions.ownerOf(token_id).call()
        except ContractLogicError as e:
            # ownerOf reverts for burned tokens
            raise PositionGone(f"position {token_id} no longer exists: {e}") from e
        except Exception as e:
            logger.error("Failed to read owner of token_id=%s: %s", token_id, e)
            raise DataFetchError(f"position {token_id} unreadable: {e}") from e

        if nft_owner.lower() != owner.lower():
            logger.warning(
                "Ignoring token_id=%s (owner=%s, expected=%s)", token_id, nft_owner, owner
            )
            return None

        try:
            liquidity = pm.functions.getPositionLiquidity(token_id).call()
        except Exception as e:
            logger.error("Failed to read liquidity of token_id=%s: %s", token_id, e)
            raise DataFetchError(f"position {token_id} unreadable: {e}") from e

        # Positions minted through the PositionManager are keyed by it, salted by token id
        info = self.get_position_info(
            chain_config.POSITION_MANAGER,
            int(record["tick_lower"]),
            int(record["tick_upper"]),
            token_id.to_bytes(32, "big"),
        )
        return Position(
            token_id=token_id,
            tick_lower=int(record["tick_lower"]),
            tick_upper=int(record["tick_upper"]),
            liquidity=int(liquidity),
            fee_growth_inside_0_last=info["feeGrowthInside0LastX128"],
            fee_growth_inside_1_last=info["feeGrowthInside1LastX128"],
        )

    def get_positions(self, owner: str, records: list[dict], prune=None) -> list[Position]:
        """All readable positions in ``records``; unreadable ones are skipped.

        ``prune(token_id)`` is called for records whose token has been burned.
        """
        positions = []
        for record in records:
            token_id = record.get("token_id")
            try:
                position = self.get_position(owner, record)
            except PositionGone as e:
                logger.warning("Dropping token_id=%s from the registry: %s", token_id, e)
                if prune is not None:
                    prune(token_id)
                continue
            except DataFetchError:
                logger.warning("Skipping position token_id=%s this cycle", token_id)
                continue
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Skipping malformed registry record %s: %s", record, e)
                continue
            if position is not None:
                positions.append(position)
        return positions

    def get_tick_boundary_accrual(self, tick: int) -> TickAccrual:
        try:
            result = self.state_view.functions.getTickFeeGrowthOutside(self.pool_id, tick).call()
        except Exception as e:
            logger.error("Failed to get fee growth outside tick %d: %s", tick, e)
            raise DataFetchError(f"accrual data for tick {tick} unavailable: {e}") from e
        return TickAccrual(tick=tick, fee_growth_outside_0=result[0], fee_growth_outside_1=result[1])

    def get_wallet_balance(self, owner: str, price: float) -> WalletBalance:
        try:
            addr = Web3.to_checksum_address(owner)
            eth_raw = self.w3.eth.get_balance(addr)
            usdc_raw = self.usdc.functions.balanceOf(addr).call()
        except Exception as e:
            logger.error("Failed to get wallet balance: %s", e)
            raise DataFetchError(f"wallet balance unavailable: {e}") from e
        return WalletBalance.from_amounts(
            eth_raw / 10**chain_config.ETH_DECIMALS,
            usdc_raw / 10**chain_config.USDC_DECIMALS,
            price,
        )

    def tick_to_price(self, tick: int) -> float:
        return pool_math.tick_to_price(tick, chain_config.ETH_DECIMALS, chain_config.USDC_DECIMALS)

    # ------------------------------------------------------------------
    # Liquidity distribution
    # ------------------------------------------------------------------

    def get_tick_liquidity_net(self, tick: int) -> int:
        try:
            return self.state_view.functions.getTickLiquidity(self.pool_id, tick).call()[1]
        except Exception as e:
            logger.error("Failed to get liquidity at tick %d: %s", tick, e)
            raise DataFetchError(f"tick {tick} liquidity unavailable: {e}") from e

    def get_liquidity_distribution(
        self, pool: Pool, tick_lower: int, tick_upper: int
    ) -> list[tuple[float, int]]:
        """Active liquidity per tick spacing between two ticks, as (price, liquidity)."""
        spacing = pool.tick_spacing
        start = (pool.current_tick // spacing) * spacing
        points = {start: pool.liquidity}

        active = pool.liquidity
        tick = start + spacing
        while tick <= tick_upper:
            active += self.get_tick_liquidity_net(tick)
            points[tick] = active
            tick += spacing

        active = pool.liquidity
        tick = start
        while tick - spacing >= tick_lower:
            active -= self.get_tick_liquidity_net(tick)
            points[tick - spacing] = active
            tick -= spacing

        return [(self.tick_to_price(t), max(points[t], 0)) for t in sorted(points)]


def render_liquidity_chart(points: list[tuple[float, int]], width: int = 40) -> str:
    """Text bar chart of a liquidity distribution, one line per price."""
    if not points:
        return ""
    peak = max(liquidity for _, liquidity in points) or 1
    lines = []
    for price, liquidity in points:
        bar = "#" * round(width * liquidity / peak)
        lines.append(f"{price:>12.4f} | {bar}")
    return "\n".join(lines)
