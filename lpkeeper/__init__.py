"""Unattended liquidity manager for a single concentrated-liquidity position."""

__version__ = "0.1.0"
