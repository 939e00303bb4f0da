"""
LPAgent — main decision loop for keeping one concentrated-liquidity position
in range on a Uniswap V4 pool.

Each cycle: read pool, positions and balances -> close positions that left
their range -> rebalance the wallet -> open a fresh position around the
current price -> record what happened -> sleep.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone

from lpkeeper import config
from lpkeeper.analytics import close_event, make_sink, open_event, swap_event
from lpkeeper.errors import DataFetchError, LPKeeperError, PolicyViolation
from lpkeeper.fees import compute_fees
from lpkeeper.models import CycleReport, OpenPlan, Pool, Position, WalletBalance
from lpkeeper.ranges import is_earning_yield, plan_range, price_range, validate_open_plan
from lpkeeper.rebalance import balance_ratio, decide_swap, desired_base_amount, plan_open_size
from lpkeeper.state_reader import render_liquidity_chart

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_dir=config.LOG_DIR) -> logging.Logger:
    """Console at INFO, decisions.log at DEBUG, on the package logger."""
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("lpkeeper")
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    fh = logging.FileHandler(os.path.join(log_dir, "decisions.log"))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(fh)
    return root


class LPAgent:
    """Autonomous single-position liquidity manager."""

    MAX_CLOSE_WORKERS = 4

    def __init__(self, chain, sink, strategy, decisions_file=None):
        self.chain = chain
        self.sink = sink
        self.strategy = strategy
        self.decisions_file = str(decisions_file) if decisions_file else None
        self.ready = False
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self):
        """Run one-time chain setup (token approvals) and show the liquidity around the price."""
        logger.info("Running setup...")
        self.chain.setup()
        self.ready = True

        try:
            pool = self.chain.get_pool()
        except DataFetchError as e:
            logger.warning("Pool unavailable during setup: %s", e)
            return
        if pool is not None and not self.strategy.visualize_liquidity:
            self.visualize(pool)

    def visualize(self, pool: Pool):
        """Log the liquidity around the price, three range widths wide."""
        tick_lower, tick_upper = plan_range(pool, self.strategy.spaces * 3)
        try:
            points = self.chain.get_liquidity_distribution(pool, tick_lower, tick_upper)
        except DataFetchError as e:
            logger.warning("Liquidity distribution unavailable: %s", e)
            return
        logger.info("Liquidity distribution:\n%s", render_liquidity_chart(points))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        try:
            self._run_cycle(report)
        finally:
            self._record(report)
        return report

    def _run_cycle(self, report: CycleReport):
        if not self.ready:
            self.setup()

        pool = self.chain.get_pool()
        if pool is None:
            raise DataFetchError("pool not found")
        if pool.tick_spacing != self.strategy.tick_spacing:
            raise PolicyViolation(
                f"pool tick spacing {pool.tick_spacing} does not match "
                f"configured {self.strategy.tick_spacing}"
            )
        report.price = pool.price
        logger.info("Pool: tick=%d  price=%.4f", pool.current_tick, pool.price)

        if self.strategy.visualize_liquidity:
            self.visualize(pool)

        positions = self.chain.get_positions(self.chain.owner)
        balance = self._read_balance(pool, report)

        out_of_range = []
        for position in positions:
            if is_earning_yield(position, pool):
                report.in_range.append(position.token_id)
                self.log_decision(pool, position, "HOLD")
            else:
                logger.info("Position %s is not earning yield", position.token_id)
                out_of_range.append(position)
                self.log_decision(pool, position, "CLOSE")

        self._close_positions(pool, balance, out_of_range, report)

        if not report.ok:
            logger.warning("Skipping rebalance and open after %d error(s)", len(report.errors))
            return
        self._rebalance(pool, report)

        if not report.ok:
            return
        if report.in_range:
            logger.info("Position %s still earning yield, not opening another", report.in_range)
            return
        self._open(report)

    def _read_balance(self, pool: Pool, report: CycleReport) -> WalletBalance | None:
        """Wallet balance for the close records. A failed read does not stop closing."""
        try:
            balance = self.chain.get_wallet_balance(pool.price)
        except DataFetchError as e:
            logger.error("Wallet balance unavailable: %s", e)
            report.errors.append(f"balance: {e}")
            return None

        logger.info(
            "Balance on wallet: %s %s + %s %s (%.2f %s)",
            balance.base_amount,
            config.BASE_SYMBOL,
            balance.quote_amount,
            config.QUOTE_SYMBOL,
            balance.total_value,
            config.QUOTE_SYMBOL,
        )
        return balance

    def _close_positions(
        self,
        pool: Pool,
        balance: WalletBalance | None,
        positions: list[Position],
        report: CycleReport,
    ):
        if not positions:
            return

        workers = min(len(positions), self.MAX_CLOSE_WORKERS)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._close_position, pool, balance, position): position
                for position in positions
            }
            for future in as_completed(futures):
                position = futures[future]
                try:
                    event = future.result()
                except Exception as e:
                    logger.error("Closing position %s failed: %s", position.token_id, e)
                    report.errors.append(f"close {position.token_id}: {e}")
                    continue
                report.closed.append(position.token_id)
                report.events.append(event)

    def _close_position(
        self, pool: Pool, balance: WalletBalance | None, position: Position
    ) -> dict:
        logger.info("Closing position %s", position.token_id)
        try:
            lower = self.chain.get_tick_boundary_accrual(position.tick_lower)
            upper = self.chain.get_tick_boundary_accrual(position.tick_upper)
            fees = compute_fees(position, pool, lower, upper)
        except (DataFetchError, ValueError) as e:
            raise DataFetchError(
                f"fee computation failed for position {position.token_id}: {e}"
            ) from e
        logger.info(
            "Fees: %.6f %s + %.4f %s (%.4f %s)",
            fees.fee_base,
            config.BASE_SYMBOL,
            fees.fee_quote,
            config.QUOTE_SYMBOL,
            fees.fee_value_total,
            config.QUOTE_SYMBOL,
        )

        tx_hash = self.chain.close_position(position.token_id)
        logger.info("Position %s closed", position.token_id)
        return close_event(pool.price, balance, position.token_id, fees, tx_hash)

    def _rebalance(self, pool: Pool, report: CycleReport):
        try:
            balance = self.chain.get_wallet_balance(pool.price)
            ratio = balance_ratio(balance, pool.price)
            if ratio is not None:
                logger.info("Balance ratio: %.0f%%", ratio * 100)

            plan = decide_swap(balance, pool.price, self.strategy.swap_min)
            if not plan.is_swap:
                logger.info("No swap needed")
                return

            logger.info("Swapping %s %s for %s", plan.amount, plan.from_asset, plan.to_asset)
            tx_hash = self.chain.swap(plan.from_asset, plan.to_asset, plan.amount, price=pool.price)
        except LPKeeperError as e:
            logger.error("Rebalance failed: %s", e)
            report.errors.append(f"swap: {e}")
            return

        report.swap = plan
        report.events.append(swap_event(pool.price, balance, plan, tx_hash))

    def _open(self, report: CycleReport):
        try:
            # Price may have moved with our own swap
            pool = self.chain.get_pool()
            if pool is None:
                raise DataFetchError("pool not found")
            balance = self.chain.get_wallet_balance(pool.price)

            desired = desired_base_amount(
                balance, self.strategy.amount_base, self.strategy.min_base_on_wallet
            )
            size = plan_open_size(balance, desired, self.strategy.min_base_on_wallet)
            if not size.should_open:
                logger.info(
                    "Not opening new positions due to low %s wallet balance", config.BASE_SYMBOL
                )
                return

            tick_lower, tick_upper = plan_range(pool, self.strategy.spaces)
            plan = OpenPlan(tick_lower=tick_lower, tick_upper=tick_upper, base_amount=size.base_amount)
            validate_open_plan(plan, pool)
            price_lower, price_upper = price_range(pool, tick_lower, tick_upper)
            logger.info(
                "Opening position between prices %.4f and %.4f with %s %s",
                price_lower,
                price_upper,
                plan.base_amount,
                config.BASE_SYMBOL,
            )
            tx_hash = self.chain.open_position(plan, pool)
        except LPKeeperError as e:
            logger.error("Open failed: %s", e)
            report.errors.append(f"open: {e}")
            return

        report.opened = plan
        report.events.append(open_event(pool.price, balance, plan, price_lower, price_upper, tx_hash))

    def _record(self, report: CycleReport):
        for event in report.events:
            try:
                self.sink.save(event)
            except Exception as e:
                logger.error("Failed to save %s analytics datapoint: %s", event["operation"], e)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self):
        """Main agent loop: run a cycle -> sleep, until stopped."""
        logger.info(
            "Agent running. Checking every %ds. Press Ctrl+C to stop.",
            self.strategy.trade_interval,
        )
        try:
            while not self._stop.is_set():
                try:
                    report = self.run_cycle()
                    logger.info(
                        "Cycle done: closed=%s swap=%s opened=%s errors=%d",
                        report.closed,
                        report.swap.action if report.swap else "none",
                        report.opened is not None,
                        len(report.errors),
                    )
                except Exception as e:
                    logger.error("Error in agent loop: %s", e, exc_info=True)

                logger.info("Waiting %d seconds", self.strategy.trade_interval)
                self._stop.wait(self.strategy.trade_interval)
        except KeyboardInterrupt:
            logger.info("Agent stopped by user.")

    def stop(self):
        self._stop.set()

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def log_decision(self, pool: Pool, position: Position, decision: str):
        """Log decision details to decisions.log and decisions.jsonl."""
        logger.debug(
            "DECISION: %s | tick=%d price=%.4f | range=[%d,%d] | token_id=%s",
            decision,
            pool.current_tick,
            pool.price,
            position.tick_lower,
            position.tick_upper,
            position.token_id,
        )
        if self.decisions_file is None:
            return

        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "decision": decision,
            "tick": pool.current_tick,
            "price": round(pool.price, 4),
            "range": [position.tick_lower, position.tick_upper],
            "in_range": decision == "HOLD",
            "token_id": position.token_id,
        }
        with open(self.decisions_file, "a") as f:
            f.write(json.dumps(record) + "\n")


# ======================================================================
# Entry point
# ======================================================================


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep a concentrated-liquidity position in range")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--no-health", action="store_true", help="Do not start the health endpoint")
    return parser.parse_args()


def main() -> int:
    from lpkeeper.chain_client import Web3ChainClient
    from lpkeeper.config import StrategyConfig
    from lpkeeper.health import start_health_server

    args = parse_args()
    strategy = StrategyConfig.from_env()
    setup_logging(config.LOG_DIR)

    if not args.no_health:
        start_health_server(strategy.health_port)

    sink = make_sink(strategy.analytics_sink_id)
    try:
        chain = Web3ChainClient(strategy)
        agent = LPAgent(
            chain,
            sink,
            strategy,
            decisions_file=os.path.join(config.LOG_DIR, "decisions.jsonl"),
        )
        if args.once:
            report = agent.run_cycle()
            return 0 if report.ok else 1

        signal.signal(signal.SIGTERM, lambda *_: agent.stop())
        agent.run()
    finally:
        sink.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
