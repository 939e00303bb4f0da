"""
Uniswap V4 transactions: open and close positions through the PositionManager,
swap through the Universal Router. Uses raw eth_abi encoding for action
commands sent via modifyLiquidities() and execute().
"""

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone

from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address
from web3 import Web3

from lpkeeper import config as chain_config
from lpkeeper import pool_math
from lpkeeper.errors import ExecutionError, PolicyViolation
from lpkeeper.models import BASE, QUOTE, OpenPlan, Pool

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


# Max uint values used in approvals
MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
MAX_UINT48 = 2**48 - 1

MIN_ALLOWANCE = 10**12


class LPManager:
    """Encodes and sends Uniswap V4 PositionManager and router commands."""

    def __init__(self, w3: Web3, account, strategy, positions_file=None):
        self.w3 = w3
        self.account = account
        self.strategy = strategy
        self.positions_file = str(positions_file or chain_config.POSITIONS_FILE)
        self._registry_lock = threading.Lock()
        # Close transactions run in parallel; nonces are handed out under _send_lock
        # and the receipt wait happens outside it
        self._send_lock = threading.Lock()
        self._next_nonce = None

        self.position_manager = w3.eth.contract(
            address=to_checksum_address(chain_config.POSITION_MANAGER),
            abi=_load_abi("position_manager.json"),
        )
        self.usdc = w3.eth.contract(
            address=to_checksum_address(chain_config.USDC_ADDRESS),
            abi=_load_abi("erc20.json"),
        )
        self.permit2 = w3.eth.contract(
            address=to_checksum_address(chain_config.PERMIT2),
            abi=_load_abi("permit2.json"),
        )
        self.router = w3.eth.contract(
            address=to_checksum_address(chain_config.UNIVERSAL_ROUTER),
            abi=_load_abi("universal_router.json"),
        )

    # ------------------------------------------------------------------
    # Pool key
    # ------------------------------------------------------------------

    def build_pool_key(self) -> tuple:
        """Returns (currency0, currency1, fee, tickSpacing, hooks) as a tuple."""
        key = chain_config.build_pool_key(self.strategy.tick_spacing)
        return (
            key["currency0"],
            key["currency1"],
            key["fee"],
            key["tick_spacing"],
            key["hooks"],
        )

    # ------------------------------------------------------------------
    # Approvals (one-time setup)
    # ------------------------------------------------------------------

    def setup_approvals(self):
        """Approve USDC -> Permit2 -> (PositionManager, UniversalRouter).

        Native ETH needs no approval (sent as msg.value). Existing approvals
        are left alone.
        """
        sender = self.account.address
        permit2 = to_checksum_address(chain_config.PERMIT2)
        usdc = to_checksum_address(chain_config.USDC_ADDRESS)

        if self.usdc.functions.allowance(sender, permit2).call() < MIN_ALLOWANCE:
            tx_hash = self._send_tx(
                self.usdc.functions.approve(permit2, MAX_UINT256), gas=100_000
            )
            logger.info("USDC.approve(Permit2) tx=%s", tx_hash)

        for spender in (chain_config.POSITION_MANAGER, chain_config.UNIVERSAL_ROUTER):
            spender = to_checksum_address(spender)
            amount, expiration, _ = self.permit2.functions.allowance(sender, usdc, spender).call()
            if int(amount) >= MIN_ALLOWANCE and int(expiration) > int(time.time()) + 60:
                continue
            tx_hash = self._send_tx(
                self.permit2.functions.approve(usdc, spender, MAX_UINT160, MAX_UINT48),
                gas=100_000,
            )
            logger.info("Permit2.approve(USDC, %s) tx=%s", spender, tx_hash)

    # ------------------------------------------------------------------
    # Open position
    # ------------------------------------------------------------------

    def mint_position(self, plan: OpenPlan, pool: Pool) -> dict:
        """Mint a new LP position holding ``plan.base_amount`` ETH.

        Actions: [MINT_POSITION, CLOSE_CURRENCY, CLOSE_CURRENCY, SWEEP]

        Returns {"tx_hash": str, "token_id": int}.
        """
        amount0 = int(plan.base_amount * 10**chain_config.ETH_DECIMALS)
        try:
            liquidity = pool_math.liquidity_for_base_amount(
                pool.sqrt_price_x96, plan.tick_lower, plan.tick_upper, amount0
            )
        except ValueError as e:
            raise PolicyViolation(str(e)) from e
        if liquidity <= 0:
            raise PolicyViolation(f"{plan.base_amount} ETH buys no liquidity in this range")

        sqrt_a = pool_math.tick_to_sqrt_price_x96(plan.tick_lower)
        sqrt_b = pool_math.tick_to_sqrt_price_x96(plan.tick_upper)
        need0, need1 = pool_math.amounts_for_liquidity(
            pool.sqrt_price_x96, sqrt_a, sqrt_b, liquidity
        )
        headroom = 1 + self.strategy.slippage
        amount0_max = int(need0 * headroom) + 1
        amount1_max = int(need1 * headroom) + 1

        pool_key = self.build_pool_key()

        # MINT_POSITION params:
        # (PoolKey, int24 tickLower, int24 tickUpper, uint256 liquidity,
        #  uint128 amount0Max, uint128 amount1Max, address owner, bytes hookData)
        mint_params = abi_encode(
            [
                "(address,address,uint24,int24,address)",
                "int24",
                "int24",
                "uint256",
                "uint128",
                "uint128",
                "address",
                "bytes",
            ],
            [
                pool_key,
                plan.tick_lower,
                plan.tick_upper,
                liquidity,
                amount0_max,
                amount1_max,
                self.account.address,
                b"",
            ],
        )

        close_c0 = abi_encode(["address"], [to_checksum_address(chain_config.ETH_ADDRESS)])
        close_c1 = abi_encode(["address"], [to_checksum_address(chain_config.USDC_ADDRESS)])

        # SWEEP params: (address currency, address to), returns unused ETH
        sweep = abi_encode(
            ["address", "address"],
            [to_checksum_address(chain_config.ETH_ADDRESS), self.account.address],
        )

        actions = bytes(
            [
                chain_config.MINT_POSITION,
                chain_config.CLOSE_CURRENCY,
                chain_config.CLOSE_CURRENCY,
                chain_config.SWEEP,
            ]
        )
        receipt = self._send_modify_liquidities(
            actions, [mint_params, close_c0, close_c1, sweep], value=amount0_max
        )

        token_id = self._parse_token_id_from_receipt(receipt)
        tx_hash = receipt["transactionHash"].hex()
        if token_id is None:
            # The position manager is not enumerable; an unregistered position is lost to the agent
            logger.error("Minted position not registered, no token id in receipt tx=%s", tx_hash)
            raise ExecutionError(f"mint {tx_hash} left no token id in its receipt", tx_hash)
        logger.info(
            "Minted position token_id=%s ticks=[%d, %d] liq=%d tx=%s",
            token_id,
            plan.tick_lower,
            plan.tick_upper,
            liquidity,
            tx_hash,
        )
        self.save_position(token_id, plan.tick_lower, plan.tick_upper, entry_price=pool.price)
        return {"tx_hash": tx_hash, "token_id": token_id}

    # ------------------------------------------------------------------
    # Close position
    # ------------------------------------------------------------------

    def close_position(self, token_id: int) -> dict:
        """Remove all liquidity, collect owed fees and burn the position NFT.

        Actions: [BURN_POSITION, TAKE_PAIR]

        Returns {"tx_hash": str}.
        """
        # (uint256 tokenId, uint128 amount0Min, uint128 amount1Min, bytes hookData)
        burn_params = abi_encode(
            ["uint256", "uint128", "uint128", "bytes"],
            [token_id, 0, 0, b""],
        )
        # TAKE_PAIR params: (address currency0, address currency1, address recipient)
        take_params = abi_encode(
            ["address", "address", "address"],
            [
                to_checksum_address(chain_config.ETH_ADDRESS),
                to_checksum_address(chain_config.USDC_ADDRESS),
                self.account.address,
            ],
        )

        actions = bytes([chain_config.BURN_POSITION, chain_config.TAKE_PAIR])
        receipt = self._send_modify_liquidities(actions, [burn_params, take_params])
        tx_hash = receipt["transactionHash"].hex()
        logger.info("Closed position token_id=%d tx=%s", token_id, tx_hash)
        self.remove_position(token_id)
        return {"tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Swap
    # ------------------------------------------------------------------

    def swap(self, from_asset: str, to_asset: str, amount: float, price: float | None = None) -> dict:
        """Exact-in swap of ``amount`` units of ``from_asset`` through the V4 pool.

        With a price the minimum output is bounded by the configured slippage.
        """
        if {from_asset, to_asset} != {BASE, QUOTE}:
            raise PolicyViolation(f"cannot swap {from_asset} -> {to_asset}")
        if amount <= 0:
            raise PolicyViolation(f"swap amount must be positive, got {amount}")

        zero_for_one = from_asset == BASE
        if zero_for_one:
            amount_in = int(amount * 10**chain_config.ETH_DECIMALS)
            expected_out = amount * price * 10**chain_config.USDC_DECIMALS if price else 0
        else:
            amount_in = int(amount * 10**chain_config.USDC_DECIMALS)
            expected_out = amount / price * 10**chain_config.ETH_DECIMALS if price else 0
        amount_out_min = int(expected_out * (1 - self.strategy.slippage))

        commands, inputs = self._build_v4_swap_input(
            zero_for_one=zero_for_one, amount_in=amount_in, amount_out_min=amount_out_min
        )
        deadline = int(time.time()) + chain_config.TX_DEADLINE_SECONDS
        receipt = self._send_tx(
            self.router.functions.execute(commands, inputs, deadline),
            gas=1_500_000,
            value=amount_in if zero_for_one else 0,
            wait=True,
        )
        tx_hash = receipt["transactionHash"].hex()
        logger.info(
            "Swapped %s %s -> %s (min out raw=%d) tx=%s",
            amount,
            from_asset,
            to_asset,
            amount_out_min,
            tx_hash,
        )
        return {"tx_hash": tx_hash}

    def _build_v4_swap_input(
        self, *, zero_for_one: bool, amount_in: int, amount_out_min: int
    ) -> tuple[bytes, list[bytes]]:
        eth = to_checksum_address(chain_config.ETH_ADDRESS)
        usdc = to_checksum_address(chain_config.USDC_ADDRESS)
        input_currency, output_currency = (eth, usdc) if zero_for_one else (usdc, eth)

        swap_params = abi_encode(
            [
                "(address,address,uint24,int24,address)",
                "bool",
                "uint128",
                "uint128",
                "bytes",
            ],
            [self.build_pool_key(), zero_for_one, amount_in, amount_out_min, b""],
        )
        settle_params = abi_encode(["address", "uint256"], [input_currency, amount_in])
        take_params = abi_encode(["address", "uint256"], [output_currency, amount_out_min])

        actions = bytes(
            [chain_config.SWAP_EXACT_IN_SINGLE, chain_config.SETTLE_ALL, chain_config.TAKE_ALL]
        )
        v4_input = abi_encode(
            ["bytes", "bytes[]"], [actions, [swap_params, settle_params, take_params]]
        )
        return bytes([chain_config.V4_SWAP_COMMAND]), [v4_input]

    # ------------------------------------------------------------------
    # Internal: build, sign, send
    # ------------------------------------------------------------------

    def _send_modify_liquidities(self, actions: bytes, params: list, value: int = 0) -> dict:
        """Encode unlockData, build tx, sign, send, and wait for receipt."""
        unlock_data = abi_encode(["bytes", "bytes[]"], [actions, params])
        deadline = int(time.time()) + chain_config.TX_DEADLINE_SECONDS
        return self._send_tx(
            self.position_manager.functions.modifyLiquidities(unlock_data, deadline),
            gas=1_000_000,
            value=value,
            wait=True,
        )

    def _send_tx(self, call, gas: int, value: int = 0, wait: bool = False):
        """Sign and send a contract call. Returns the receipt or the tx hash."""
        try:
            with self._send_lock:
                nonce = self._take_nonce()
                try:
                    tx = call.build_transaction(
                        {
                            "from": self.account.address,
                            "nonce": nonce,
                            "value": value,
                            "gas": gas,
                            "gasPrice": self.w3.eth.gas_price,
                        }
                    )
                    signed = self.account.sign_transaction(tx)
                    tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
                except Exception:
                    # Nothing went out with this nonce; re-read it from the node next time
                    self._next_nonce = None
                    raise
                self._next_nonce = nonce + 1
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except Exception as e:
            logger.error("Transaction failed to send: %s", e)
            raise ExecutionError(f"transaction failed: {e}") from e

        if receipt["status"] != 1:
            logger.error("Transaction reverted: tx=%s", tx_hash.hex())
            raise ExecutionError(f"transaction reverted: {tx_hash.hex()}", tx_hash.hex())

        return receipt if wait else tx_hash.hex()

    def _take_nonce(self) -> int:
        """Next nonce for the account. Caller holds _send_lock."""
        if self._next_nonce is None:
            self._next_nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
        return self._next_nonce

    # ------------------------------------------------------------------
    # Parse token ID from receipt (ERC721 Transfer event)
    # ------------------------------------------------------------------

    def _parse_token_id_from_receipt(self, receipt) -> int | None:
        """Extract minted tokenId from ERC721 Transfer(from=0x0, to, id) event."""
        transfer_topic = self.w3.keccak(text="Transfer(address,address,uint256)")
        zero_address_topic = "0x" + "0" * 64
        pm_address = to_checksum_address(chain_config.POSITION_MANAGER).lower()

        for log in receipt.get("logs", []):
            if log["address"].lower() != pm_address:
                continue
            if len(log["topics"]) < 4:
                continue
            if log["topics"][0] != transfer_topic:
                continue
            # Transfer from 0x0 means a mint
            topic1_hex = log["topics"][1].hex()
            if not topic1_hex.startswith("0x"):
                topic1_hex = "0x" + topic1_hex
            if topic1_hex == zero_address_topic:
                topic3_hex = log["topics"][3].hex()
                if not topic3_hex.startswith("0x"):
                    topic3_hex = "0x" + topic3_hex
                return int(topic3_hex, 16)

        logger.warning("Could not parse token_id from receipt logs")
        return None

    # ------------------------------------------------------------------
    # Position registry (JSON file)
    # ------------------------------------------------------------------

    def save_position(
        self,
        token_id: int,
        tick_lower: int,
        tick_upper: int,
        entry_price: float | None = None,
    ):
        """Append a position record to positions.json."""
        with self._registry_lock:
            positions = self.load_positions()
            record = {
                "token_id": token_id,
                "tick_lower": tick_lower,
                "tick_upper": tick_upper,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            if entry_price is not None:
                record["entry_price"] = float(entry_price)
            positions.append(record)
            self._write_positions(positions)
        logger.info("Saved position token_id=%d to %s", token_id, self.positions_file)

    def remove_position(self, token_id: int):
        with self._registry_lock:
            positions = self.load_positions()
            remaining = [p for p in positions if p.get("token_id") != token_id]
            if len(remaining) != len(positions):
                self._write_positions(remaining)
                logger.info("Removed position token_id=%d from %s", token_id, self.positions_file)

    def load_positions(self) -> list[dict]:
        """Load all saved positions from positions.json."""
        if not os.path.exists(self.positions_file):
            return []
        try:
            with open(self.positions_file) as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            logger.warning("Could not load positions from %s, returning empty", self.positions_file)
            return []

    def _write_positions(self, positions: list[dict]):
        os.makedirs(os.path.dirname(self.positions_file) or ".", exist_ok=True)
        tmp = self.positions_file + ".tmp"
        with open(tmp, "w") as f:
            json.dump(positions, f, indent=2)
        os.replace(tmp, self.positions_file)
