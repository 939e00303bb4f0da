"""Error types raised by the agent and its chain adapters."""


class LPKeeperError(Exception):
    """Base class for all agent errors."""


class DataFetchError(LPKeeperError):
    """Pool, position, accrual or balance data could not be read."""


class PolicyViolation(LPKeeperError, ValueError):
    """A planned action breaks a strategy rule (misaligned ticks, bad amounts)."""


class ExecutionError(LPKeeperError, RuntimeError):
    """A transaction could not be sent or reverted on chain."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class PositionGone(DataFetchError):
    """A registered position no longer exists on chain (burned)."""
