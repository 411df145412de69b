"""Per-member mission progress with exactly-once completion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import Brand, LoyaltyMember, LoyaltyMission, LoyaltyMissionProgress
from loyalty_engine.services.clock import within_window
from loyalty_engine.services.errors import ConcurrencyConflictError, NotEligibleError, ValidationError
from loyalty_engine.services.ledger.store import LedgerStore
from loyalty_engine.services.tiers.resolver import TierResolver


@dataclass
class CompletionResult:
    already_completed: bool
    reward: int
    progress: LoyaltyMissionProgress


def _as_decimal(value: Decimal | int | float | str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as error:
        raise ValidationError(f"Invalid progress delta: {value!r}") from error


class MissionTracker:
    """Track mission progress and claim completions."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    @staticmethod
    def ensure_available(mission: LoyaltyMission, now: datetime) -> None:
        if not mission.is_active:
            raise NotEligibleError("Mission is not active")
        if not within_window(now, mission.starts_at, mission.ends_at):
            raise NotEligibleError("Mission is outside its availability window")

    async def ineligibility_reason(self, member: LoyaltyMember, mission: LoyaltyMission, now: datetime) -> str | None:
        """Return why ``member`` may not complete ``mission`` now, or ``None``."""

        if not member.is_active:
            return "Member is not active"
        brand = await self._db.get(Brand, member.brand_id)
        if brand is None or not brand.is_active:
            return "Brand is not active"
        try:
            self.ensure_available(mission, now)
        except NotEligibleError as error:
            return str(error)
        if mission.required_tier_order is None and not mission.min_points_required:
            return None

        balance = await LedgerStore(self._db).balance_of(member.id)
        if mission.min_points_required and balance < mission.min_points_required:
            return "Minimum points requirement not met"
        if mission.required_tier_order is not None:
            tier = await TierResolver(self._db).resolve(member.brand_id, balance)
            if tier is None or tier.order < mission.required_tier_order:
                return "Member tier requirement not met"
        return None

    async def ensure_eligible(self, member: LoyaltyMember, mission: LoyaltyMission, now: datetime) -> None:
        reason = await self.ineligibility_reason(member, mission, now)
        if reason is not None:
            raise NotEligibleError(reason)

    async def get_progress(self, member_id: UUID, mission_id: UUID) -> LoyaltyMissionProgress | None:
        stmt = (
            select(LoyaltyMissionProgress)
            .where(
                LoyaltyMissionProgress.member_id == member_id,
                LoyaltyMissionProgress.mission_id == mission_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def record_progress(
        self,
        member: LoyaltyMember,
        mission: LoyaltyMission,
        delta: Decimal | int | float | str,
        now: datetime,
    ) -> LoyaltyMissionProgress:
        """Add ``delta`` to the member's progress, clamped at the mission target."""

        amount = _as_decimal(delta)
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Mission progress delta must be positive")

        progress = await self.get_progress(member.id, mission.id)
        if progress is not None and progress.completed_at is not None:
            return progress
        self.ensure_available(mission, now)

        target = Decimal(mission.target)
        if progress is None:
            progress = LoyaltyMissionProgress(
                member_id=member.id,
                mission_id=mission.id,
                brand_id=member.brand_id,
                progress=Decimal("0"),
            )
            self._db.add(progress)

        current = Decimal(progress.progress or 0)
        progress.progress = min(current + amount, target)
        await self._db.flush()
        logger.info(
            "Recorded loyalty mission progress",
            member_id=str(member.id),
            mission_id=str(mission.id),
            progress=str(progress.progress),
            target=str(target),
        )
        return progress

    async def complete(self, member: LoyaltyMember, mission: LoyaltyMission, now: datetime) -> CompletionResult:
        """Claim a mission completion; replays return the recorded reward.

        Posting the reward is left to the caller, inside the same transaction.
        """

        progress = await self.get_progress(member.id, mission.id)
        if progress is not None and progress.completed_at is not None:
            logger.info(
                "Loyalty mission already completed",
                member_id=str(member.id),
                mission_id=str(mission.id),
            )
            return CompletionResult(already_completed=True, reward=int(progress.reward_points or 0), progress=progress)

        await self.ensure_eligible(member, mission, now)
        target = Decimal(mission.target)
        if progress is None or Decimal(progress.progress or 0) < target:
            raise NotEligibleError("Mission target not reached")

        stmt = (
            update(LoyaltyMissionProgress)
            .where(
                LoyaltyMissionProgress.id == progress.id,
                LoyaltyMissionProgress.completed_at.is_(None),
            )
            .values(completed_at=now, reward_points=mission.reward_points)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Mission completion was claimed concurrently")

        await self._db.refresh(progress)
        logger.info(
            "Completed loyalty mission",
            member_id=str(member.id),
            mission_id=str(mission.id),
            reward_points=mission.reward_points,
        )
        return CompletionResult(already_completed=False, reward=int(mission.reward_points), progress=progress)

    async def expire_missions(self, now: datetime) -> int:
        """Deactivate active missions whose window has closed."""

        stmt = select(LoyaltyMission).where(
            LoyaltyMission.is_active.is_(True),
            LoyaltyMission.ends_at.is_not(None),
        )
        result = await self._db.execute(stmt)
        expired = 0
        for mission in result.scalars().all():
            if within_window(now, None, mission.ends_at):
                continue
            mission.is_active = False
            expired += 1
            logger.info("Expired loyalty mission", mission_id=str(mission.id), brand_id=str(mission.brand_id))
        if expired:
            await self._db.flush()
        return expired


__all__ = ["CompletionResult", "MissionTracker"]
