"""Brand-side configuration: members, tier ladders, wheels and missions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import (
    Brand,
    LoyaltyMember,
    LoyaltyMission,
    LoyaltyTier,
    LoyaltyWheel,
    LoyaltyWheelSegment,
    WheelRewardType,
)
from loyalty_engine.services.clock import utcnow
from loyalty_engine.services.engine import Clock, SessionFactory
from loyalty_engine.services.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from loyalty_engine.services.ledger.store import LedgerStore
from loyalty_engine.services.locks import KeyedLockRegistry
from loyalty_engine.services.rewards.applicator import RewardApplicator
from loyalty_engine.services.tiers.resolver import locate, validate_ladder
from loyalty_engine.services.wheels.resolver import WheelResolver


@dataclass
class TierDefinition:
    name: str
    min_points: int
    max_points: int | None
    order: int
    benefits: list[Any] = field(default_factory=list)


@dataclass
class SegmentDefinition:
    label: str
    probability: float
    reward_type: WheelRewardType = WheelRewardType.POINTS
    reward_points: int = 0
    reward_metadata: dict[str, Any] | None = None


def _check_segments(segments: Sequence[SegmentDefinition]) -> None:
    for segment in segments:
        if segment.reward_points < 0:
            raise ValidationError(f"Segment '{segment.label}' has negative reward points")
        if not math.isfinite(segment.probability) or segment.probability < 0:
            raise ValidationError(f"Segment '{segment.label}' has an invalid probability")


class LoyaltyAdminService:
    """Administrative writes, each committed as one transaction."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Clock | None = None,
        locks: KeyedLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self._locks = locks or KeyedLockRegistry()

    async def _commit(self, session: AsyncSession, operation: str) -> None:
        try:
            await session.commit()
        except IntegrityError as error:
            await session.rollback()
            raise ConcurrencyConflictError(f"{operation} conflicted with existing data") from error
        except SQLAlchemyError as error:
            await session.rollback()
            logger.exception("Loyalty admin storage failure", operation=operation)
            raise StorageError(f"{operation} failed in storage") from error

    @staticmethod
    async def _brand(session: AsyncSession, brand_id: UUID) -> Brand:
        brand = await session.get(Brand, brand_id)
        if brand is None:
            raise NotFoundError("Brand", brand_id)
        return brand

    async def create_brand(self, name: str, *, points_per_currency_unit: Decimal | float | int | None = None) -> Brand:
        if not name or not name.strip():
            raise ValidationError("Brand name is required")
        if points_per_currency_unit is None:
            points_per_currency_unit = settings.default_points_per_currency_unit
        rate = Decimal(str(points_per_currency_unit))
        if rate < 0:
            raise ValidationError("points_per_currency_unit must be non-negative")
        async with self._session_factory() as session:
            brand = Brand(name=name.strip(), points_per_currency_unit=rate)
            session.add(brand)
            await self._commit(session, "create_brand")
            logger.info("Created loyalty brand", brand_id=str(brand.id))
            return brand

    async def set_brand_active(self, brand_id: UUID, active: bool) -> Brand:
        """Suspend or resume earning and spending for every member of a brand."""

        async with self._session_factory() as session:
            brand = await self._brand(session, brand_id)
            brand.is_active = active
            await self._commit(session, "set_brand_active")
            logger.info("Updated loyalty brand state", brand_id=str(brand_id), active=active)
            return brand

    async def enroll_member(self, brand_id: UUID, *, external_ref: str | None = None) -> LoyaltyMember:
        """Fetch or create the brand's membership for ``external_ref``."""

        async with self._session_factory() as session:
            await self._brand(session, brand_id)
            if external_ref:
                stmt = select(LoyaltyMember).where(
                    LoyaltyMember.brand_id == brand_id, LoyaltyMember.external_ref == external_ref
                )
                existing = (await session.execute(stmt)).scalar_one_or_none()
                if existing is not None:
                    return existing

            tiers = await session.execute(select(LoyaltyTier).where(LoyaltyTier.brand_id == brand_id))
            bottom = locate(validate_ladder(list(tiers.scalars().all()), brand_id=brand_id), 0)
            member = LoyaltyMember(
                brand_id=brand_id,
                external_ref=external_ref,
                points_balance=0,
                current_tier_id=bottom.id if bottom else None,
            )
            session.add(member)
            try:
                await self._commit(session, "enroll_member")
            except ConcurrencyConflictError:
                logger.warning("Detected race when enrolling loyalty member", external_ref=external_ref)
                if not external_ref:
                    raise
                return await self.enroll_member(brand_id, external_ref=external_ref)
            logger.info("Enrolled loyalty member", brand_id=str(brand_id), member_id=str(member.id))
            return member

    async def deactivate_member(self, brand_id: UUID, member_id: UUID) -> LoyaltyMember:
        async with self._locks.hold(("member", member_id)):
            async with self._session_factory() as session:
                member = await LedgerStore(session).lock_member(member_id)
                if member is None or member.brand_id != brand_id:
                    raise NotFoundError("Member", member_id)
                if member.is_active:
                    member.is_active = False
                    member.deactivated_at = self._clock()
                    await self._commit(session, "deactivate_member")
                    logger.info("Deactivated loyalty member", member_id=str(member_id))
                return member

    async def configure_tier_ladder(self, brand_id: UUID, tiers: Sequence[TierDefinition]) -> list[LoyaltyTier]:
        """Replace the brand's ladder and re-resolve every member's cached tier."""

        if not tiers:
            raise ValidationError("A tier ladder needs at least one tier")
        ladder = validate_ladder(list(tiers), brand_id=brand_id)

        async with self._session_factory() as session:
            await self._brand(session, brand_id)
            await session.execute(
                update(LoyaltyMember)
                .where(LoyaltyMember.brand_id == brand_id)
                .values(current_tier_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.execute(delete(LoyaltyTier).where(LoyaltyTier.brand_id == brand_id))
            created = [
                LoyaltyTier(
                    brand_id=brand_id,
                    name=tier.name,
                    min_points=tier.min_points,
                    max_points=tier.max_points,
                    order=tier.order,
                    benefits=list(tier.benefits),
                )
                for tier in ladder
            ]
            session.add_all(created)
            await session.flush()

            members = await session.execute(
                select(LoyaltyMember).where(LoyaltyMember.brand_id == brand_id).execution_options(populate_existing=True)
            )
            applicator = RewardApplicator(session)
            for member in members.scalars().all():
                await applicator.refresh_tier(member)

            await self._commit(session, "configure_tier_ladder")
            logger.info("Configured loyalty tier ladder", brand_id=str(brand_id), tiers=len(created))
            return created

    async def create_wheel(
        self,
        brand_id: UUID,
        *,
        name: str,
        segments: Sequence[SegmentDefinition],
        cost_to_spin: int = 0,
        max_spins_per_day: int = 1,
        cooldown_seconds: int = 0,
        description: str | None = None,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> LoyaltyWheel:
        if cost_to_spin < 0:
            raise ValidationError("cost_to_spin must be non-negative")
        if max_spins_per_day < 0:
            raise ValidationError("max_spins_per_day must be non-negative")
        if cooldown_seconds < 0:
            raise ValidationError("cooldown_seconds must be non-negative")
        if starts_at and ends_at and ends_at <= starts_at:
            raise ValidationError("Wheel window must end after it starts")
        _check_segments(segments)

        async with self._session_factory() as session:
            await self._brand(session, brand_id)
            wheel = LoyaltyWheel(
                brand_id=brand_id,
                name=name,
                description=description,
                cost_to_spin=cost_to_spin,
                max_spins_per_day=max_spins_per_day,
                cooldown_seconds=cooldown_seconds,
                starts_at=starts_at,
                ends_at=ends_at,
                is_active=True,
                segments=[
                    LoyaltyWheelSegment(
                        position=position,
                        label=segment.label,
                        probability=float(segment.probability),
                        reward_type=segment.reward_type,
                        reward_points=segment.reward_points,
                        reward_metadata=segment.reward_metadata,
                    )
                    for position, segment in enumerate(segments)
                ],
            )
            session.add(wheel)
            WheelResolver(session).refresh_spinnable(wheel)
            await self._commit(session, "create_wheel")
            logger.info(
                "Created loyalty wheel",
                brand_id=str(brand_id),
                wheel_id=str(wheel.id),
                spinnable=wheel.is_spinnable,
            )
            return wheel

    async def update_wheel_segments(
        self, brand_id: UUID, wheel_id: UUID, segments: Sequence[SegmentDefinition]
    ) -> LoyaltyWheel:
        """Retire the live segments and install a new table.

        Retired segments stay referenced by historical spin records.
        """

        _check_segments(segments)
        async with self._session_factory() as session:
            wheel = await session.get(LoyaltyWheel, wheel_id)
            if wheel is None or wheel.brand_id != brand_id:
                raise NotFoundError("Wheel", wheel_id)

            now = self._clock()
            next_position = max((segment.position for segment in wheel.segments), default=-1) + 1
            for segment in wheel.segments:
                if segment.retired_at is None:
                    segment.retired_at = now
            for offset, definition in enumerate(segments):
                wheel.segments.append(
                    LoyaltyWheelSegment(
                        position=next_position + offset,
                        label=definition.label,
                        probability=float(definition.probability),
                        reward_type=definition.reward_type,
                        reward_points=definition.reward_points,
                        reward_metadata=definition.reward_metadata,
                    )
                )
            WheelResolver(session).refresh_spinnable(wheel)
            await self._commit(session, "update_wheel_segments")
            logger.info("Updated loyalty wheel segments", wheel_id=str(wheel_id), spinnable=wheel.is_spinnable)
            return wheel

    async def set_wheel_active(self, brand_id: UUID, wheel_id: UUID, active: bool) -> LoyaltyWheel:
        async with self._session_factory() as session:
            wheel = await session.get(LoyaltyWheel, wheel_id)
            if wheel is None or wheel.brand_id != brand_id:
                raise NotFoundError("Wheel", wheel_id)
            wheel.is_active = active
            await self._commit(session, "set_wheel_active")
            logger.info("Updated loyalty wheel state", wheel_id=str(wheel_id), active=active)
            return wheel

    async def create_mission(
        self,
        brand_id: UUID,
        *,
        name: str,
        target: Decimal | int | float | str,
        reward_points: int,
        mission_type: str = "custom",
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
        required_tier_order: int | None = None,
        min_points_required: int | None = None,
    ) -> LoyaltyMission:
        try:
            threshold = Decimal(str(target))
        except (InvalidOperation, ValueError) as error:
            raise ValidationError(f"Invalid mission target: {target!r}") from error
        if not threshold.is_finite() or threshold <= 0:
            raise ValidationError("Mission target must be positive")
        if isinstance(reward_points, bool) or not isinstance(reward_points, int) or reward_points < 0:
            raise ValidationError("Mission reward must be a non-negative integer")
        if starts_at and ends_at and ends_at <= starts_at:
            raise ValidationError("Mission window must end after it starts")
        requirements = {"required_tier_order": required_tier_order, "min_points_required": min_points_required}
        for field_name, value in requirements.items():
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise ValidationError(f"{field_name} must be a non-negative integer")

        async with self._session_factory() as session:
            await self._brand(session, brand_id)
            mission = LoyaltyMission(
                brand_id=brand_id,
                name=name,
                mission_type=mission_type,
                target=threshold,
                reward_points=reward_points,
                starts_at=starts_at,
                ends_at=ends_at,
                required_tier_order=required_tier_order,
                min_points_required=min_points_required,
                is_active=True,
            )
            session.add(mission)
            await self._commit(session, "create_mission")
            logger.info("Created loyalty mission", brand_id=str(brand_id), mission_id=str(mission.id))
            return mission


__all__ = ["LoyaltyAdminService", "SegmentDefinition", "TierDefinition"]
