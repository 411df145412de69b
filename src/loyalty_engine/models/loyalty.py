"""Loyalty ledger, tier, wheel and mission domain models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


class LedgerEntryKind(str, Enum):
    """Kinds of point-affecting events recorded on the ledger."""

    PURCHASE = "purchase"
    REWARD = "reward"
    MISSION = "mission"
    WHEEL = "wheel"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"
    REVERSAL = "reversal"


class WheelRewardType(str, Enum):
    """Prize types a wheel segment can pay out."""

    POINTS = "points"
    DISCOUNT = "discount"
    NOTHING = "nothing"


class Brand(Base):
    """Tenant owning members, tier ladders, wheels and missions."""

    __tablename__ = "loyalty_brands"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    points_per_currency_unit = Column(Numeric(10, 4), nullable=False, default=1, server_default="1")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyTier(Base):
    """One rung of a brand's tier ladder."""

    __tablename__ = "loyalty_tiers"
    __table_args__ = (
        UniqueConstraint("brand_id", "tier_order", name="uq_loyalty_tiers_brand_order"),
        CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    min_points = Column(Integer, nullable=False)
    max_points = Column(Integer, nullable=True)
    benefits = Column(JSON, nullable=False, default=list)
    order = Column("tier_order", Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyMember(Base):
    """Brand-scoped membership with cached, ledger-derived balance and tier."""

    __tablename__ = "loyalty_members"
    __table_args__ = (
        UniqueConstraint("brand_id", "external_ref", name="uq_loyalty_members_brand_ref"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False, index=True)
    external_ref = Column(String, nullable=True)
    current_tier_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_tiers.id"), nullable=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_spend = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    last_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}


class LoyaltyLedgerEntry(Base):
    """Immutable record of a single points-affecting event."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("member_id", "sequence", name="uq_loyalty_ledger_entries_member_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    kind = Column(SqlEnum(LedgerEntryKind, name="loyalty_ledger_entry_kind"), nullable=False)
    points_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    monetary_amount = Column(Numeric(14, 2), nullable=True)
    description = Column(String, nullable=True)
    correlation_id = Column(String, nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyWheel(Base):
    """Probability wheel template owned by a brand."""

    __tablename__ = "loyalty_wheels"
    __table_args__ = (
        CheckConstraint("cost_to_spin >= 0", name="ck_loyalty_wheels_cost"),
        CheckConstraint("max_spins_per_day >= 0", name="ck_loyalty_wheels_quota"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    cost_to_spin = Column(Integer, nullable=False, default=0, server_default="0")
    max_spins_per_day = Column(Integer, nullable=False, default=1, server_default="1")
    cooldown_seconds = Column(Integer, nullable=False, default=0, server_default="0")
    is_spinnable = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    segments = relationship(
        "LoyaltyWheelSegment",
        back_populates="wheel",
        order_by="LoyaltyWheelSegment.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class LoyaltyWheelSegment(Base):
    """Weighted outcome of a wheel; retired rather than deleted on update."""

    __tablename__ = "loyalty_wheel_segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    wheel_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_wheels.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    label = Column(String, nullable=False)
    probability = Column(Float, nullable=False)
    reward_type = Column(
        SqlEnum(WheelRewardType, name="loyalty_wheel_reward_type"),
        nullable=False,
        default=WheelRewardType.POINTS,
    )
    reward_points = Column(Integer, nullable=False, default=0, server_default="0")
    reward_metadata = Column(JSON, nullable=True)
    retired_at = Column(DateTime(timezone=True), nullable=True)

    wheel = relationship("LoyaltyWheel", back_populates="segments")


class LoyaltySpinRecord(Base):
    """Audit trail of wheel spins and the source of truth for daily quotas."""

    __tablename__ = "loyalty_spin_records"
    __table_args__ = (
        UniqueConstraint(
            "member_id",
            "wheel_id",
            "spin_day",
            "daily_sequence",
            name="uq_loyalty_spin_records_member_wheel_day_seq",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    wheel_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_wheels.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False)
    segment_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_wheel_segments.id"), nullable=False)
    spin_day = Column(Date, nullable=False)
    daily_sequence = Column(Integer, nullable=False)
    points_used = Column(Integer, nullable=False, default=0)
    points_awarded = Column(Integer, nullable=False, default=0)
    result_reward = Column(JSON, nullable=True)
    ledger_entry_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_ledger_entries.id"), nullable=True)
    spun_at = Column(DateTime(timezone=True), nullable=False)


class LoyaltyMission(Base):
    """Goal-based task paying a one-time point reward."""

    __tablename__ = "loyalty_missions"
    __table_args__ = (
        CheckConstraint("target > 0", name="ck_loyalty_missions_target"),
        CheckConstraint("reward_points >= 0", name="ck_loyalty_missions_reward"),
        CheckConstraint(
            "min_points_required IS NULL OR min_points_required >= 0",
            name="ck_loyalty_missions_min_points",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    mission_type = Column(String, nullable=False, default="custom")
    target = Column(Numeric(14, 2), nullable=False)
    reward_points = Column(Integer, nullable=False)
    # Ladder order the member must have reached; survives ladder reconfiguration.
    required_tier_order = Column(Integer, nullable=True)
    min_points_required = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyMissionProgress(Base):
    """Per-member progress toward a mission; completed at most once."""

    __tablename__ = "loyalty_mission_progress"
    __table_args__ = (
        UniqueConstraint("member_id", "mission_id", name="uq_loyalty_mission_progress_member_mission"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_members.id", ondelete="CASCADE"), nullable=False, index=True)
    mission_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_missions.id", ondelete="CASCADE"), nullable=False)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_brands.id", ondelete="CASCADE"), nullable=False)
    progress = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    completed_at = Column(DateTime(timezone=True), nullable=True)
    reward_points = Column(Integer, nullable=True)
    ledger_entry_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_ledger_entries.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
