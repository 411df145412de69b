"""Loyalty engine service exports."""

from .admin import LoyaltyAdminService, SegmentDefinition, TierDefinition  # noqa: F401
from .engine import (  # noqa: F401
    LedgerHistory,
    LoyaltyEngine,
    MissionCompletion,
    MissionEligibility,
    SpinEligibility,
    SpinHistory,
    SpinResult,
    TierStatus,
)
from .errors import (  # noqa: F401
    ConcurrencyConflictError,
    ConfigurationError,
    InsufficientPointsError,
    LoyaltyEngineError,
    NotEligibleError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
