"""Loyalty ledger and reward-resolution engine."""

__version__ = "0.1.0"
