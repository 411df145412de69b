"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    Brand,
    LedgerEntryKind,
    LoyaltyLedgerEntry,
    LoyaltyMember,
    LoyaltyMission,
    LoyaltyMissionProgress,
    LoyaltySpinRecord,
    LoyaltyTier,
    LoyaltyWheel,
    LoyaltyWheelSegment,
    WheelRewardType,
)
