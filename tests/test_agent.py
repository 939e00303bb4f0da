import json

import pytest

from conftest import FakeChainClient, ListSink
from lpkeeper.agent import LPAgent
from lpkeeper.config import StrategyConfig
from lpkeeper.errors import DataFetchError, PolicyViolation
from lpkeeper.models import BASE, QUOTE, OpenPlan, Pool, Position, TickAccrual
from lpkeeper.pool_math import Q128


def operations(records):
    return [r["operation"] for r in records]


def test_full_cycle_closes_swaps_and_opens(pool, strategy, sink):
    stale = Position(1, 0, 500, liquidity=Q128)
    chain = FakeChainClient(
        pool,
        positions=[stale],
        # cycle start, before swap, before open
        balances=[(10.0, 0.0), (10.0, 0.0), (5.0, 500.0)],
        accruals={0: TickAccrual(0, 10, 0), 500: TickAccrual(500, 40, 0)},
    )
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert report.ok
    assert chain.closed == [1]
    assert chain.swaps == [(BASE, QUOTE, pytest.approx(5.0), 100.0)]
    assert chain.opened == [OpenPlan(950, 1050, 0.5)]
    assert operations(sink.records) == ["close", "swap", "open"]

    close, swap, opened = sink.records
    assert close["token_id"] == 1
    assert close["fee_base"] == pytest.approx(30 / 10**18)
    assert close["tx_hash"] == "0xclose1"
    assert swap["from_asset"] == BASE and swap["amount"] == pytest.approx(5.0)
    assert opened["tick_lower"] == 950 and opened["tick_upper"] == 1050
    assert opened["price_lower"] < opened["price_upper"]
    for record in sink.records:
        assert record["price"] == 100.0
        assert {"timestamp", "base_amount", "quote_amount", "total_value"} <= set(record)


def test_setup_runs_once(pool, strategy, sink):
    chain = FakeChainClient(pool, balances=[(1.0, 100.0)])
    agent = LPAgent(chain, sink, strategy)
    agent.run_cycle()
    agent.run_cycle()
    assert chain.setup_calls == 1


def test_one_failed_close_does_not_hide_the_others(pool, strategy, sink):
    positions = [Position(1, 0, 500), Position(2, 2000, 2500), Position(3, -100, 0)]
    chain = FakeChainClient(pool, positions=positions, balances=[(10.0, 0.0)])
    chain.fail_close = {2}
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert not report.ok
    assert sorted(report.closed) == [1, 3]
    assert sorted(r["token_id"] for r in sink.records) == [1, 3]
    assert operations(sink.records) == ["close", "close"]
    # the cycle stops after a failed close
    assert chain.swaps == []
    assert chain.opened == []


def test_missing_accrual_skips_position_without_closing(pool, strategy, sink):
    chain = FakeChainClient(pool, positions=[Position(1, 0, 500)], balances=[(10.0, 0.0)])
    chain.fail_accrual = {500}
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert chain.closed == []
    assert report.errors and "fee computation failed" in report.errors[0]
    assert sink.records == []


def test_unreadable_balance_still_closes_positions(pool, strategy, sink):
    chain = FakeChainClient(pool, positions=[Position(1, 0, 500), Position(2, 2000, 2500)])
    chain.fail_balance = True
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert sorted(chain.closed) == [1, 2]
    assert report.errors == ["balance: balance rpc down"]
    assert operations(sink.records) == ["close", "close"]
    for record in sink.records:
        assert record["base_amount"] is None
        assert record["total_value"] is None
    # no rebalance or open without a known balance
    assert chain.swaps == []
    assert chain.opened == []


def test_in_range_position_is_kept_and_nothing_opened(pool, strategy, sink):
    chain = FakeChainClient(pool, positions=[Position(1, 900, 1100)], balances=[(10.0, 1000.0)])
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert report.ok
    assert report.in_range == [1]
    assert chain.closed == []
    assert chain.opened == []


def test_low_base_balance_skips_open_without_error(pool, strategy, sink):
    chain = FakeChainClient(pool, balances=[(0.6, 60.0)])
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert report.ok
    assert chain.swaps == []
    assert chain.opened == []
    assert sink.records == []


def test_failed_swap_is_not_retried_and_blocks_open(pool, strategy, sink):
    chain = FakeChainClient(pool, balances=[(10.0, 0.0)])
    chain.fail_swap = True
    agent = LPAgent(chain, sink, strategy)

    report = agent.run_cycle()

    assert report.errors == ["swap: swap reverted"]
    assert chain.opened == []


def test_open_size_defaults_to_half_of_spare_base(pool, sink):
    strategy = StrategyConfig(spaces=4, tick_spacing=10, min_base_on_wallet=0.2, trade_interval=0.01)
    chain = FakeChainClient(pool, balances=[(1.2, 100.0)])
    agent = LPAgent(chain, sink, strategy)

    agent.run_cycle()

    assert chain.opened == [OpenPlan(980, 1020, pytest.approx(0.5))]


def test_missing_pool_aborts_cycle(strategy, sink):
    chain = FakeChainClient(None)
    agent = LPAgent(chain, sink, strategy)
    with pytest.raises(DataFetchError):
        agent.run_cycle()


def test_tick_spacing_mismatch_aborts_cycle(strategy, sink):
    chain = FakeChainClient(Pool(current_tick=1000, tick_spacing=60, price=100.0))
    agent = LPAgent(chain, sink, strategy)
    with pytest.raises(PolicyViolation):
        agent.run_cycle()
    assert chain.opened == []


def test_sink_failure_does_not_break_cycle(pool, strategy):
    chain = FakeChainClient(pool, positions=[Position(1, 0, 500)], balances=[(10.0, 0.0)])
    agent = LPAgent(chain, ListSink(fail=True), strategy)

    report = agent.run_cycle()

    assert report.ok
    assert chain.closed == [1]
    assert len(report.events) == 3


def test_run_survives_failing_cycle_and_stops(strategy, sink):
    chain = FakeChainClient(None)
    agent = LPAgent(chain, sink, strategy)
    calls = []

    def stop_after_first_cycle():
        calls.append(1)
        if len(calls) >= 2:
            agent.stop()

    chain.on_get_pool = stop_after_first_cycle
    agent.run()

    assert chain.setup_calls == 1
    assert len(calls) >= 2


def test_decisions_are_logged_as_json_lines(pool, strategy, sink, tmp_path):
    decisions = tmp_path / "decisions.jsonl"
    positions = [Position(1, 900, 1100), Position(2, 0, 500)]
    chain = FakeChainClient(pool, positions=positions, balances=[(0.1, 10.0)])
    agent = LPAgent(chain, sink, strategy, decisions_file=decisions)

    agent.run_cycle()

    lines = [json.loads(line) for line in decisions.read_text().splitlines()]
    assert [(d["token_id"], d["decision"], d["in_range"]) for d in lines] == [
        (1, "HOLD", True),
        (2, "CLOSE", False),
    ]


def test_visualize_every_cycle_when_enabled(pool, sink, caplog):
    strategy = StrategyConfig(spaces=2, tick_spacing=10, visualize_liquidity=True, trade_interval=0.01)
    chain = FakeChainClient(pool, balances=[(0.1, 10.0)])
    agent = LPAgent(chain, sink, strategy)

    with caplog.at_level("INFO", logger="lpkeeper"):
        agent.run_cycle()

    assert "Liquidity distribution" in caplog.text
    assert "#" in caplog.text
