"""
Analytics records for open/close/swap operations and the sinks that store them.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone

import requests

from lpkeeper.models import FeeReport, OpenPlan, RebalancePlan, WalletBalance

logger = logging.getLogger(__name__)

OPEN = "open"
CLOSE = "close"
SWAP = "swap"


def build_event(operation: str, price: float, balance: WalletBalance | None, **fields) -> dict:
    """Common record fields. Balance fields are None when the wallet could not be read."""
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "price": price,
        "base_amount": balance.base_amount if balance is not None else None,
        "quote_amount": balance.quote_amount if balance is not None else None,
        "total_value": balance.total_value if balance is not None else None,
        "operation": operation,
    }
    record.update(fields)
    return record


def close_event(
    price: float, balance: WalletBalance | None, token_id: int, fees: FeeReport, tx_hash: str
) -> dict:
    return build_event(
        CLOSE,
        price,
        balance,
        token_id=token_id,
        fee_base=fees.fee_base,
        fee_quote=fees.fee_quote,
        fee_value_total=fees.fee_value_total,
        tx_hash=tx_hash,
    )


def swap_event(price: float, balance: WalletBalance, plan: RebalancePlan, tx_hash: str) -> dict:
    return build_event(
        SWAP,
        price,
        balance,
        from_asset=plan.from_asset,
        to_asset=plan.to_asset,
        amount=plan.amount,
        tx_hash=tx_hash,
    )


def open_event(
    price: float,
    balance: WalletBalance,
    plan: OpenPlan,
    price_lower: float,
    price_upper: float,
    tx_hash: str,
) -> dict:
    return build_event(
        OPEN,
        price,
        balance,
        amount=plan.base_amount,
        tick_lower=plan.tick_lower,
        tick_upper=plan.tick_upper,
        price_lower=price_lower,
        price_upper=price_upper,
        tx_hash=tx_hash,
    )


class JsonlAnalyticsSink:
    """Appends one JSON object per line to a local file."""

    def __init__(self, path: str):
        self.path = str(path)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def save(self, record: dict) -> None:
        logger.info("Saving analytics datapoint %s", json.dumps(record))
        with self._lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(record) + "\n")

    def close(self) -> None:
        pass


class HttpAnalyticsSink:
    """POSTs each record as JSON to a collector URL."""

    def __init__(self, url: str, timeout: float = 15.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._lock = threading.Lock()

    def save(self, record: dict) -> None:
        logger.info("Saving analytics datapoint to %s %s", self.url, json.dumps(record))
        with self._lock:
            res = self.session.post(self.url, json=record, timeout=self.timeout)
        res.raise_for_status()

    def close(self) -> None:
        self.session.close()


def make_sink(sink_id: str):
    """HTTP sink for http(s) URLs, JSON-lines file sink for anything else."""
    if sink_id.startswith(("http://", "https://")):
        return HttpAnalyticsSink(sink_id)
    return JsonlAnalyticsSink(sink_id)
