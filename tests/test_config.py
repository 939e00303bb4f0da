import pytest

from lpkeeper import config
from lpkeeper.config import StrategyConfig
from lpkeeper.errors import PolicyViolation

ENV_VARS = (
    "RPC_URL",
    "SPACES",
    "TICK_SPACING",
    "MIN_BASE_ON_WALLET",
    "AMOUNT_BASE",
    "SWAP_MIN",
    "SLIPPAGE",
    "TRADE_INTERVAL",
    "ANALYTICS_SINK",
    "PRIVATE_KEY",
    "PORT",
    "VISUALIZE_LIQUIDITY",
    "POOL_ID",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    strategy = StrategyConfig.from_env()
    assert strategy.spaces == 10
    assert strategy.tick_spacing == config.TICK_SPACING
    assert strategy.min_base_on_wallet == 0.2
    assert strategy.amount_base is None
    assert strategy.swap_min is None
    assert strategy.visualize_liquidity is False
    assert strategy.wallet_secret is None


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("SPACES", "6")
    monkeypatch.setenv("MIN_BASE_ON_WALLET", "0.5")
    monkeypatch.setenv("AMOUNT_BASE", "0.25")
    monkeypatch.setenv("SWAP_MIN", "10")
    monkeypatch.setenv("TRADE_INTERVAL", "60")
    monkeypatch.setenv("ANALYTICS_SINK", "https://collector.example/lp")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("VISUALIZE_LIQUIDITY", "true")

    strategy = StrategyConfig.from_env()

    assert strategy.spaces == 6
    assert strategy.min_base_on_wallet == 0.5
    assert strategy.amount_base == 0.25
    assert strategy.swap_min == 10.0
    assert strategy.trade_interval == 60.0
    assert strategy.analytics_sink_id == "https://collector.example/lp"
    assert strategy.health_port == 8080
    assert strategy.visualize_liquidity is True


def test_blank_amount_means_auto_size(monkeypatch):
    monkeypatch.setenv("AMOUNT_BASE", "  ")
    assert StrategyConfig.from_env().amount_base is None


@pytest.mark.parametrize(
    "name, value",
    [
        ("SPACES", "7"),
        ("SPACES", "0"),
        ("SPACES", "ten"),
        ("TICK_SPACING", "-10"),
        ("MIN_BASE_ON_WALLET", "-1"),
        ("AMOUNT_BASE", "0"),
        ("SLIPPAGE", "1.5"),
        ("TRADE_INTERVAL", "0"),
        ("PORT", "http"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(PolicyViolation):
        StrategyConfig.from_env()


def test_secret_is_hidden_from_repr(monkeypatch):
    monkeypatch.setenv("PRIVATE_KEY", "0xdeadbeef")
    strategy = StrategyConfig.from_env()
    assert strategy.wallet_secret == "0xdeadbeef"
    assert "deadbeef" not in repr(strategy)


def test_pool_id_is_deterministic():
    pool_id = config.compute_pool_id()
    assert pool_id == config.compute_pool_id()
    assert pool_id.startswith("0x") and len(pool_id) == 66
    assert pool_id != config.compute_pool_id(tick_spacing=60, fee=3000)
