"""Loyalty job exports."""

from .missions import expire_missions  # noqa: F401
from .reconciliation import reconcile_member_balances  # noqa: F401

__all__ = [
    "expire_missions",
    "reconcile_member_balances",
]
