"""Typed failures raised by the loyalty engine."""

from __future__ import annotations

from datetime import datetime


class LoyaltyEngineError(RuntimeError):
    """Base exception for loyalty engine failures."""


class ValidationError(LoyaltyEngineError):
    """Raised for malformed input or configuration (never retried)."""


class InsufficientPointsError(ValidationError):
    """Raised when a debit would drive a balance below zero."""

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f"Insufficient points: balance {balance}, required {required}")
        self.balance = balance
        self.required = required


class QuotaExceededError(LoyaltyEngineError):
    """Raised when a member has no spins left on a wheel for the quota day."""

    def __init__(
        self,
        message: str = "Daily spin limit reached",
        *,
        remaining_spins: int | None = 0,
        retry_after: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.remaining_spins = remaining_spins
        self.retry_after = retry_after


class NotEligibleError(LoyaltyEngineError):
    """Raised when a member cannot perform an operation in the current state."""


class NotFoundError(LoyaltyEngineError):
    """Raised when an entity is missing or belongs to another brand."""

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConfigurationError(LoyaltyEngineError):
    """Raised when brand-managed data (tier ladders) violates its invariants."""

    def __init__(self, message: str, *, brand_id: object | None = None) -> None:
        super().__init__(message)
        self.brand_id = brand_id


class ConcurrencyConflictError(LoyaltyEngineError):
    """Raised when an atomic unit lost a race; safe to retry."""


class StorageError(LoyaltyEngineError):
    """Raised for unexpected persistence failures."""


__all__ = [
    "ConcurrencyConflictError",
    "ConfigurationError",
    "InsufficientPointsError",
    "LoyaltyEngineError",
    "NotEligibleError",
    "NotFoundError",
    "QuotaExceededError",
    "StorageError",
    "ValidationError",
]
