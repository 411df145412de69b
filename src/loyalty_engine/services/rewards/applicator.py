"""Single write path for every point-changing operation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import (
    Brand,
    LedgerEntryKind,
    LoyaltyLedgerEntry,
    LoyaltyMember,
    LoyaltyMission,
    LoyaltySpinRecord,
    LoyaltyTier,
    LoyaltyWheel,
    LoyaltyWheelSegment,
)
from loyalty_engine.observability.loyalty import get_loyalty_store, record_after_commit
from loyalty_engine.services.errors import (
    InsufficientPointsError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from loyalty_engine.services.ledger.store import LedgerStore
from loyalty_engine.services.missions.tracker import MissionTracker
from loyalty_engine.services.tiers.resolver import TierResolver
from loyalty_engine.services.wheels.resolver import WheelResolver, segment_points


@dataclass
class RewardOutcome:
    entry: LoyaltyLedgerEntry
    new_balance: int
    tier_changed: bool
    new_tier: LoyaltyTier | None


@dataclass
class SpinApplication:
    outcome: RewardOutcome
    segment: LoyaltyWheelSegment
    spin: LoyaltySpinRecord
    remaining_spins: int | None


@dataclass
class MissionApplication:
    reward: int
    new_balance: int
    already_completed: bool
    outcome: RewardOutcome | None = None


def _positive_amount(amount: Decimal | int | float | str) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as error:
        raise ValidationError(f"Invalid monetary amount: {amount!r}") from error
    if not value.is_finite() or value <= 0:
        raise ValidationError("Monetary amount must be positive")
    return value


class RewardApplicator:
    """Compose ledger appends with quota, mission and tier bookkeeping.

    Every method runs inside the caller's transaction and posts exactly one
    ledger entry, so the unit commits or rolls back as a whole.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerStore | None = None,
        tiers: TierResolver | None = None,
        wheels: WheelResolver | None = None,
        missions: MissionTracker | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger or LedgerStore(session)
        self._tiers = tiers or TierResolver(session)
        self._wheels = wheels or WheelResolver(session)
        self._missions = missions or MissionTracker(session)

    async def refresh_tier(self, member: LoyaltyMember) -> tuple[bool, LoyaltyTier | None]:
        """Overwrite the cached tier when the balance now maps elsewhere."""

        tier = await self._tiers.resolve(member.brand_id, member.points_balance)
        tier_id = tier.id if tier is not None else None
        if member.current_tier_id == tier_id:
            return False, tier
        previous = member.current_tier_id
        member.current_tier_id = tier_id
        await self._db.flush()
        logger.info(
            "Loyalty member tier changed",
            member_id=str(member.id),
            previous_tier_id=str(previous) if previous else None,
            tier=tier.name if tier else None,
        )
        return True, tier

    async def _post(
        self,
        member: LoyaltyMember,
        *,
        kind: LedgerEntryKind,
        points_delta: int,
        description: str | None,
        monetary_amount: Decimal | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        allow_overdraw: bool = False,
    ) -> RewardOutcome:
        entry = await self._ledger.append(
            member,
            kind=kind,
            points_delta=points_delta,
            description=description,
            monetary_amount=monetary_amount,
            correlation_id=correlation_id,
            metadata=metadata,
            allow_overdraw=allow_overdraw,
        )
        tier_changed, tier = await self.refresh_tier(member)
        return RewardOutcome(
            entry=entry,
            new_balance=member.points_balance,
            tier_changed=tier_changed,
            new_tier=tier,
        )

    async def apply_wheel_spin(
        self,
        member: LoyaltyMember,
        wheel: LoyaltyWheel,
        *,
        draw: float,
        now: datetime,
    ) -> SpinApplication:
        self._wheels.ensure_available(wheel, now)
        try:
            remaining = await self._wheels.check_quota(member.id, wheel, now)
        except QuotaExceededError:
            get_loyalty_store().record_quota_rejection()
            raise

        cost = int(wheel.cost_to_spin or 0)
        balance = await self._ledger.balance_of(member.id)
        if cost > balance:
            raise InsufficientPointsError(balance=balance, required=cost)

        segment = self._wheels.select(wheel, draw)
        prize = segment_points(segment)
        outcome = await self._post(
            member,
            kind=LedgerEntryKind.WHEEL,
            points_delta=prize - cost,
            description=f"Wheel spin: {wheel.name} - {segment.label}",
            correlation_id=str(wheel.id),
            metadata={
                "wheel_id": str(wheel.id),
                "segment_id": str(segment.id),
                "cost": cost,
                "prize_points": prize,
                "reward_type": segment.reward_type.value,
            },
        )
        spin = await self._wheels.record_spin(
            member=member,
            wheel=wheel,
            segment=segment,
            now=now,
            points_used=cost,
            points_awarded=prize,
            ledger_entry=outcome.entry,
        )
        return SpinApplication(
            outcome=outcome,
            segment=segment,
            spin=spin,
            remaining_spins=None if remaining is None else remaining - 1,
        )

    async def apply_mission_reward(
        self,
        member: LoyaltyMember,
        mission: LoyaltyMission,
        *,
        now: datetime,
    ) -> MissionApplication:
        claim = await self._missions.complete(member, mission, now)
        if claim.already_completed:
            record_after_commit(self._db, lambda store: store.record_mission_completion(replayed=True))
            balance = await self._ledger.balance_of(member.id)
            return MissionApplication(reward=claim.reward, new_balance=balance, already_completed=True)

        record_after_commit(self._db, lambda store: store.record_mission_completion(replayed=False))
        if claim.reward == 0:
            return MissionApplication(reward=0, new_balance=member.points_balance, already_completed=False)

        outcome = await self._post(
            member,
            kind=LedgerEntryKind.MISSION,
            points_delta=claim.reward,
            description=f"Mission completed: {mission.name}",
            correlation_id=str(mission.id),
            metadata={"mission_id": str(mission.id), "mission_type": mission.mission_type},
        )
        claim.progress.ledger_entry_id = outcome.entry.id
        await self._db.flush()
        return MissionApplication(
            reward=claim.reward,
            new_balance=outcome.new_balance,
            already_completed=False,
            outcome=outcome,
        )

    async def apply_manual_adjustment(
        self,
        member: LoyaltyMember,
        *,
        delta: int,
        reason: str,
        allow_overdraw: bool = False,
        actor: str | None = None,
    ) -> RewardOutcome:
        if not reason or not reason.strip():
            raise ValidationError("Adjustments require a reason")
        metadata: dict[str, Any] = {"reason": reason}
        if actor:
            metadata["actor"] = actor
        return await self._post(
            member,
            kind=LedgerEntryKind.ADJUSTMENT,
            points_delta=delta,
            description=reason,
            metadata=metadata,
            allow_overdraw=allow_overdraw,
        )

    async def apply_bonus(
        self,
        member: LoyaltyMember,
        *,
        points: int,
        reason: str,
        correlation_id: str | None = None,
    ) -> RewardOutcome:
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError("Bonus points must be a positive integer")
        return await self._post(
            member,
            kind=LedgerEntryKind.REWARD,
            points_delta=points,
            description=reason,
            correlation_id=correlation_id,
        )

    async def _brand_for(self, member: LoyaltyMember) -> Brand:
        brand = await self._db.get(Brand, member.brand_id)
        if brand is None:
            raise NotFoundError("Brand", member.brand_id)
        return brand

    async def apply_purchase(
        self,
        member: LoyaltyMember,
        *,
        amount: Decimal | int | float | str,
        points: int | None = None,
        description: str | None = None,
        order_ref: str | None = None,
    ) -> RewardOutcome:
        value = _positive_amount(amount)
        if points is None:
            brand = await self._brand_for(member)
            rate = Decimal(brand.points_per_currency_unit or 0)
            points = math.floor(value * rate)
        elif isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise ValidationError("Purchase points must be a non-negative integer")

        member.lifetime_spend = Decimal(member.lifetime_spend or 0) + value
        return await self._post(
            member,
            kind=LedgerEntryKind.PURCHASE,
            points_delta=int(points),
            description=description or "Purchase",
            monetary_amount=value,
            correlation_id=order_ref,
        )

    async def apply_refund(
        self,
        member: LoyaltyMember,
        *,
        amount: Decimal | int | float | str,
        points: int | None = None,
        order_ref: str | None = None,
    ) -> RewardOutcome:
        value = _positive_amount(amount)
        if points is None:
            brand = await self._brand_for(member)
            points = math.floor(value * Decimal(brand.points_per_currency_unit or 0))
        elif isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise ValidationError("Refund points must be a non-negative integer")

        spend = Decimal(member.lifetime_spend or 0) - value
        member.lifetime_spend = max(spend, Decimal("0"))
        return await self._post(
            member,
            kind=LedgerEntryKind.REFUND,
            points_delta=-int(points),
            description="Refund",
            monetary_amount=value,
            correlation_id=order_ref,
        )

    async def apply_reversal(
        self,
        member: LoyaltyMember,
        entry_id: UUID,
        *,
        reason: str,
        allow_overdraw: bool = False,
    ) -> RewardOutcome:
        original = await self._ledger.get(entry_id)
        if original is None or original.member_id != member.id:
            raise NotFoundError("LedgerEntry", entry_id)
        if original.kind == LedgerEntryKind.REVERSAL:
            raise ValidationError("Reversal entries cannot be reversed")
        if await self._ledger.find_reversal(original) is not None:
            raise ValidationError("Ledger entry has already been reversed")
        if original.points_delta == 0:
            raise ValidationError("Zero-point entries have nothing to reverse")

        return await self._post(
            member,
            kind=LedgerEntryKind.REVERSAL,
            points_delta=-original.points_delta,
            description=reason or f"Reversal of entry {original.sequence}",
            correlation_id=str(original.id),
            metadata={"reversed_sequence": original.sequence, "reversed_kind": original.kind.value},
            allow_overdraw=allow_overdraw,
        )


__all__ = ["MissionApplication", "RewardApplicator", "RewardOutcome", "SpinApplication"]
