import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from lpkeeper.errors import PolicyViolation

# Load .env into os.environ BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path.cwd() / ".env", override=False)

# Base chain (chain ID 8453)
DEFAULT_RPC_URL = "https://mainnet.base.org"
EXPECTED_CHAIN_ID = int(os.environ.get("EXPECTED_CHAIN_ID", "8453"))

# Uniswap V4 contracts on Base
POSITION_MANAGER = "0x7C5f5A4bBd8fD63184577525326123B519429bDc"
STATE_VIEW = "0xA3c0c9b65baD0b08107Aa264b0f3dB444b867A71"
UNIVERSAL_ROUTER = "0x6ff5693b99212da76ad316178a184ab56d299b43"
PERMIT2 = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

# Tokens: base asset is native ETH (currency0), quote asset is USDC (currency1)
ETH_ADDRESS = "0x0000000000000000000000000000000000000000"
USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE_SYMBOL = "ETH"
QUOTE_SYMBOL = "USDC"

# Pool params: ETH/USDC 0.05% pool on Base
POOL_FEE = 500
TICK_SPACING = 10
HOOKS_ADDRESS = "0x0000000000000000000000000000000000000000"

# Token decimals
ETH_DECIMALS = 18
USDC_DECIMALS = 6

# V4 PositionManager action codes
MINT_POSITION = 0x02
BURN_POSITION = 0x03
TAKE_PAIR = 0x11
CLOSE_CURRENCY = 0x12
SWEEP = 0x14

# V4 router actions and Universal Router command
SWAP_EXACT_IN_SINGLE = 0x06
SETTLE_ALL = 0x0C
TAKE_ALL = 0x0F
V4_SWAP_COMMAND = 0x10

TX_DEADLINE_SECONDS = 600

DATA_DIR = Path(os.environ.get("LPKEEPER_DATA_DIR", "data"))
POSITIONS_FILE = DATA_DIR / "positions.json"
LOG_DIR = Path(os.environ.get("LPKEEPER_LOG_DIR", "decisions"))


def build_pool_key(tick_spacing: int = TICK_SPACING, fee: int = POOL_FEE) -> dict:
    from eth_utils.address import to_checksum_address

    currency0 = to_checksum_address(ETH_ADDRESS)
    currency1 = to_checksum_address(USDC_ADDRESS)
    if int(currency0, 16) > int(currency1, 16):
        currency0, currency1 = currency1, currency0

    return {
        "currency0": currency0,
        "currency1": currency1,
        "fee": fee,
        "tick_spacing": tick_spacing,
        "hooks": to_checksum_address(HOOKS_ADDRESS),
    }


def compute_pool_id(tick_spacing: int = TICK_SPACING, fee: int = POOL_FEE) -> str:
    from eth_abi.abi import encode
    from eth_utils.crypto import keccak

    pool_key = build_pool_key(tick_spacing, fee)
    pool_key_encoded = encode(
        ["address", "address", "uint24", "int24", "address"],
        [
            pool_key["currency0"],
            pool_key["currency1"],
            pool_key["fee"],
            pool_key["tick_spacing"],
            pool_key["hooks"],
        ],
    )
    return "0x" + keccak(pool_key_encoded).hex()


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_optional_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else None


@dataclass(frozen=True)
class StrategyConfig:
    """Run parameters, read once at startup and never changed afterwards."""

    rpc_endpoint: str = DEFAULT_RPC_URL
    spaces: int = 10
    tick_spacing: int = TICK_SPACING
    min_base_on_wallet: float = 0.2
    amount_base: float | None = None
    swap_min: float | None = None
    slippage: float = 0.01
    trade_interval: float = 30.0
    analytics_sink_id: str = str(LOG_DIR / "analytics.jsonl")
    wallet_secret: str | None = field(default=None, repr=False)
    health_port: int = 3000
    visualize_liquidity: bool = False
    pool_id: str | None = None

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        try:
            return cls(
                rpc_endpoint=os.environ.get("RPC_URL", DEFAULT_RPC_URL),
                spaces=int(os.environ.get("SPACES", "10")),
                tick_spacing=int(os.environ.get("TICK_SPACING", str(TICK_SPACING))),
                min_base_on_wallet=float(os.environ.get("MIN_BASE_ON_WALLET", "0.2")),
                amount_base=_env_optional_float("AMOUNT_BASE"),
                swap_min=_env_optional_float("SWAP_MIN"),
                slippage=float(os.environ.get("SLIPPAGE", "0.01")),
                trade_interval=float(os.environ.get("TRADE_INTERVAL", "30")),
                analytics_sink_id=os.environ.get(
                    "ANALYTICS_SINK", str(LOG_DIR / "analytics.jsonl")
                ),
                wallet_secret=os.environ.get("PRIVATE_KEY") or None,
                health_port=int(os.environ.get("PORT", "3000")),
                visualize_liquidity=_env_flag("VISUALIZE_LIQUIDITY", "false"),
                pool_id=os.environ.get("POOL_ID") or None,
            )
        except ValueError as e:
            if isinstance(e, PolicyViolation):
                raise
            raise PolicyViolation(f"invalid configuration value: {e}") from e

    def validate(self) -> None:
        if self.spaces <= 0 or self.spaces % 2:
            raise PolicyViolation(f"SPACES must be a positive even integer, got {self.spaces}")
        if self.tick_spacing <= 0:
            raise PolicyViolation(f"TICK_SPACING must be positive, got {self.tick_spacing}")
        if self.min_base_on_wallet < 0:
            raise PolicyViolation(
                f"MIN_BASE_ON_WALLET must be non-negative, got {self.min_base_on_wallet}"
            )
        if self.amount_base is not None and self.amount_base <= 0:
            raise PolicyViolation(f"AMOUNT_BASE must be positive, got {self.amount_base}")
        if self.swap_min is not None and self.swap_min < 0:
            raise PolicyViolation(f"SWAP_MIN must be non-negative, got {self.swap_min}")
        if not 0 <= self.slippage < 1:
            raise PolicyViolation(f"SLIPPAGE must be in [0, 1), got {self.slippage}")
        if self.trade_interval <= 0:
            raise PolicyViolation(f"TRADE_INTERVAL must be positive, got {self.trade_interval}")
