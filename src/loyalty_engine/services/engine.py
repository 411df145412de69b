"""Loyalty engine facade: atomic, member-serialized units of work."""

from __future__ import annotations

import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar
from uuid import UUID

import backoff
from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import (
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
)
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.clock import utcnow
from loyalty_engine.services.errors import (
    ConcurrencyConflictError,
    NotEligibleError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
)
from loyalty_engine.services.ledger.store import LedgerStore, Pagination
from loyalty_engine.services.locks import KeyedLockRegistry
from loyalty_engine.services.missions.tracker import MissionTracker
from loyalty_engine.services.rewards.applicator import RewardApplicator, RewardOutcome
from loyalty_engine.services.tiers.resolver import TierProgress, TierResolver
from loyalty_engine.services.wheels.resolver import WheelResolver

SessionFactory = Callable[[], AsyncSession]
Clock = Callable[[], datetime]
RandomSource = Callable[[], float]

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


@dataclass
class SpinResult:
    segment: LoyaltyWheelSegment
    points_delta: int
    new_balance: int
    remaining_spins: int | None
    tier_changed: bool
    new_tier: LoyaltyTier | None
    entry: LoyaltyLedgerEntry


@dataclass
class MissionCompletion:
    reward: int
    new_balance: int
    already_completed: bool
    tier_changed: bool = False
    new_tier: LoyaltyTier | None = None


@dataclass
class TierStatus:
    balance: int
    current_tier: LoyaltyTier | None
    next_tier: LoyaltyTier | None
    progress: TierProgress


@dataclass
class LedgerHistory:
    entries: list[LoyaltyLedgerEntry]
    pagination: Pagination


@dataclass
class SpinEligibility:
    eligible: bool
    reason: str | None
    remaining_spins: int | None
    cost_to_spin: int
    balance: int
    retry_after: datetime | None = None


@dataclass
class SpinHistory:
    spins: list[LoyaltySpinRecord]
    pagination: Pagination


@dataclass
class MissionEligibility:
    eligible: bool
    reason: str | None
    progress: Decimal
    target: Decimal
    already_completed: bool = False


def _log_conflict_retry(details: dict[str, Any]) -> None:
    logger.warning(
        "Retrying loyalty operation after concurrency conflict",
        operation=details["target"].__name__,
        tries=details["tries"],
        wait_seconds=round(details.get("wait") or 0.0, 4),
    )


def _log_conflict_giveup(details: dict[str, Any]) -> None:
    logger.error(
        "Loyalty operation gave up after repeated conflicts",
        operation=details["target"].__name__,
        tries=details["tries"],
    )


def retry_on_conflict(func: F) -> F:
    """Retry a whole unit of work when it lost an optimistic race."""

    return backoff.on_exception(
        backoff.expo,
        ConcurrencyConflictError,
        max_tries=lambda: settings.conflict_retry_max_tries,
        factor=lambda: settings.conflict_retry_base_seconds,
        max_value=lambda: settings.conflict_retry_max_seconds,
        on_backoff=_log_conflict_retry,
        on_giveup=_log_conflict_giveup,
        logger=None,
    )(func)


class LoyaltyEngine:
    """Member-facing loyalty operations over a shared async store.

    Writes serialize per member (in-process lock plus a row lock) and run as
    one transaction; reads are unlocked point-in-time queries.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Clock | None = None,
        rng: RandomSource | None = None,
        locks: KeyedLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self._rng = rng or random.random
        self._locks = locks or KeyedLockRegistry()

    @property
    def locks(self) -> KeyedLockRegistry:
        return self._locks

    @asynccontextmanager
    async def _unit(self, member_id: UUID, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._locks.hold(("member", member_id)):
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        yield session
                except (IntegrityError, StaleDataError) as error:
                    get_loyalty_store().record_conflict(operation)
                    logger.warning(
                        "Loyalty unit of work conflicted",
                        operation=operation,
                        member_id=str(member_id),
                        error=str(error.__class__.__name__),
                    )
                    raise ConcurrencyConflictError(f"{operation} conflicted with a concurrent write") from error
                except SQLAlchemyError as error:
                    logger.exception("Loyalty storage failure", operation=operation, member_id=str(member_id))
                    raise StorageError(f"{operation} failed in storage") from error

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as error:
                logger.exception("Loyalty storage read failure")
                raise StorageError("Loyalty read failed in storage") from error

    @staticmethod
    async def _ensure_active(session: AsyncSession, member: LoyaltyMember) -> None:
        if not member.is_active:
            raise NotEligibleError("Member is not active")
        brand = await session.get(Brand, member.brand_id)
        if brand is None or not brand.is_active:
            raise NotEligibleError("Brand is not active")

    @classmethod
    async def _member(
        cls, session: AsyncSession, brand_id: UUID, member_id: UUID, *, lock: bool = True, active: bool = True
    ) -> LoyaltyMember:
        if lock:
            member = await LedgerStore(session).lock_member(member_id)
        else:
            member = await session.get(LoyaltyMember, member_id)
        if member is None or member.brand_id != brand_id:
            raise NotFoundError("Member", member_id)
        if active:
            await cls._ensure_active(session, member)
        return member

    @staticmethod
    async def _owned(session: AsyncSession, model: type, entity_id: UUID, brand_id: UUID) -> Any:
        entity = await session.get(model, entity_id)
        if entity is None or entity.brand_id != brand_id:
            raise NotFoundError(model.__name__.removeprefix("Loyalty"), entity_id)
        return entity

    @retry_on_conflict
    async def spin_wheel(
        self,
        brand_id: UUID,
        member_id: UUID,
        wheel_id: UUID,
        *,
        draw: float | None = None,
    ) -> SpinResult:
        async with self._unit(member_id, "spin_wheel") as session:
            member = await self._member(session, brand_id, member_id)
            wheel = await self._owned(session, LoyaltyWheel, wheel_id, brand_id)
            value = self._rng() if draw is None else draw
            applied = await RewardApplicator(session).apply_wheel_spin(member, wheel, draw=value, now=self._clock())
            outcome = applied.outcome
            return SpinResult(
                segment=applied.segment,
                points_delta=outcome.entry.points_delta,
                new_balance=outcome.new_balance,
                remaining_spins=applied.remaining_spins,
                tier_changed=outcome.tier_changed,
                new_tier=outcome.new_tier,
                entry=outcome.entry,
            )

    @retry_on_conflict
    async def complete_mission(self, brand_id: UUID, member_id: UUID, mission_id: UUID) -> MissionCompletion:
        async with self._unit(member_id, "complete_mission") as session:
            # replays stay available to deactivated members; first completions are gated by the tracker
            member = await self._member(session, brand_id, member_id, active=False)
            mission = await self._owned(session, LoyaltyMission, mission_id, brand_id)
            applied = await RewardApplicator(session).apply_mission_reward(member, mission, now=self._clock())
            outcome = applied.outcome
            return MissionCompletion(
                reward=applied.reward,
                new_balance=applied.new_balance,
                already_completed=applied.already_completed,
                tier_changed=outcome.tier_changed if outcome else False,
                new_tier=outcome.new_tier if outcome else None,
            )

    @retry_on_conflict
    async def record_mission_progress(
        self,
        brand_id: UUID,
        member_id: UUID,
        mission_id: UUID,
        delta: Decimal | int | float | str,
    ) -> LoyaltyMissionProgress:
        async with self._unit(member_id, "record_mission_progress") as session:
            member = await self._member(session, brand_id, member_id)
            mission = await self._owned(session, LoyaltyMission, mission_id, brand_id)
            return await MissionTracker(session).record_progress(member, mission, delta, self._clock())

    @retry_on_conflict
    async def adjust_points(
        self,
        brand_id: UUID,
        member_id: UUID,
        delta: int,
        reason: str,
        *,
        allow_overdraw: bool = False,
        actor: str | None = None,
    ) -> RewardOutcome:
        async with self._unit(member_id, "adjust_points") as session:
            member = await self._member(session, brand_id, member_id)
            return await RewardApplicator(session).apply_manual_adjustment(
                member, delta=delta, reason=reason, allow_overdraw=allow_overdraw, actor=actor
            )

    @retry_on_conflict
    async def award_bonus(
        self,
        brand_id: UUID,
        member_id: UUID,
        points: int,
        reason: str,
        *,
        correlation_id: str | None = None,
    ) -> RewardOutcome:
        async with self._unit(member_id, "award_bonus") as session:
            member = await self._member(session, brand_id, member_id)
            return await RewardApplicator(session).apply_bonus(
                member, points=points, reason=reason, correlation_id=correlation_id
            )

    @retry_on_conflict
    async def record_purchase(
        self,
        brand_id: UUID,
        member_id: UUID,
        amount: Decimal | int | float | str,
        *,
        points: int | None = None,
        description: str | None = None,
        order_ref: str | None = None,
    ) -> RewardOutcome:
        async with self._unit(member_id, "record_purchase") as session:
            member = await self._member(session, brand_id, member_id)
            return await RewardApplicator(session).apply_purchase(
                member, amount=amount, points=points, description=description, order_ref=order_ref
            )

    @retry_on_conflict
    async def record_refund(
        self,
        brand_id: UUID,
        member_id: UUID,
        amount: Decimal | int | float | str,
        *,
        points: int | None = None,
        order_ref: str | None = None,
    ) -> RewardOutcome:
        async with self._unit(member_id, "record_refund") as session:
            member = await self._member(session, brand_id, member_id)
            return await RewardApplicator(session).apply_refund(
                member, amount=amount, points=points, order_ref=order_ref
            )

    @retry_on_conflict
    async def reverse_entry(
        self,
        brand_id: UUID,
        member_id: UUID,
        entry_id: UUID,
        reason: str,
        *,
        allow_overdraw: bool = False,
    ) -> RewardOutcome:
        async with self._unit(member_id, "reverse_entry") as session:
            member = await self._member(session, brand_id, member_id, active=False)
            return await RewardApplicator(session).apply_reversal(
                member, entry_id, reason=reason, allow_overdraw=allow_overdraw
            )

    async def get_balance(self, brand_id: UUID, member_id: UUID) -> int:
        async with self._read() as session:
            await self._member(session, brand_id, member_id, lock=False, active=False)
            return await LedgerStore(session).balance_of(member_id)

    async def get_tier_status(self, brand_id: UUID, member_id: UUID) -> TierStatus:
        async with self._read() as session:
            await self._member(session, brand_id, member_id, lock=False, active=False)
            balance = await LedgerStore(session).balance_of(member_id)
            current, next_tier, progress = await TierResolver(session).status(brand_id, balance)
            return TierStatus(balance=balance, current_tier=current, next_tier=next_tier, progress=progress)

    async def get_ledger_history(
        self,
        brand_id: UUID,
        member_id: UUID,
        *,
        page: int = 1,
        page_size: int = 25,
        kinds: list[LedgerEntryKind] | None = None,
    ) -> LedgerHistory:
        async with self._read() as session:
            await self._member(session, brand_id, member_id, lock=False, active=False)
            entries, pagination = await LedgerStore(session).history(
                member_id, page=page, page_size=page_size, kinds=kinds
            )
            return LedgerHistory(entries=entries, pagination=pagination)

    async def get_spin_eligibility(self, brand_id: UUID, member_id: UUID, wheel_id: UUID) -> SpinEligibility:
        """Dry-run the spin checks without consuming quota or points."""

        async with self._read() as session:
            member = await self._member(session, brand_id, member_id, lock=False, active=False)
            wheel = await self._owned(session, LoyaltyWheel, wheel_id, brand_id)
            now = self._clock()
            wheels = WheelResolver(session)
            balance = await LedgerStore(session).balance_of(member_id)
            cost = int(wheel.cost_to_spin or 0)
            remaining = await wheels.remaining_spins(member_id, wheel, now)

            def _verdict(reason: str | None, retry_after: datetime | None = None) -> SpinEligibility:
                return SpinEligibility(
                    eligible=reason is None,
                    reason=reason,
                    remaining_spins=remaining,
                    cost_to_spin=cost,
                    balance=balance,
                    retry_after=retry_after,
                )

            try:
                await self._ensure_active(session, member)
                wheels.ensure_available(wheel, now)
                await wheels.check_quota(member_id, wheel, now)
            except NotEligibleError as error:
                return _verdict(str(error))
            except QuotaExceededError as error:
                return _verdict(str(error), error.retry_after)
            if cost > balance:
                return _verdict("Insufficient points")
            return _verdict(None)

    async def get_spin_history(
        self,
        brand_id: UUID,
        member_id: UUID,
        *,
        wheel_id: UUID | None = None,
        page: int = 1,
        page_size: int = 25,
    ) -> SpinHistory:
        async with self._read() as session:
            await self._member(session, brand_id, member_id, lock=False, active=False)
            if wheel_id is not None:
                await self._owned(session, LoyaltyWheel, wheel_id, brand_id)
            spins, pagination = await WheelResolver(session).spin_history(
                member_id, wheel_id=wheel_id, page=page, page_size=page_size
            )
            return SpinHistory(spins=spins, pagination=pagination)

    async def get_mission_eligibility(self, brand_id: UUID, member_id: UUID, mission_id: UUID) -> MissionEligibility:
        """Report whether completing the mission now would pay out."""

        async with self._read() as session:
            member = await self._member(session, brand_id, member_id, lock=False, active=False)
            mission = await self._owned(session, LoyaltyMission, mission_id, brand_id)
            tracker = MissionTracker(session)
            progress = await tracker.get_progress(member_id, mission_id)
            current = Decimal(progress.progress) if progress is not None else Decimal("0")
            target = Decimal(mission.target)
            if progress is not None and progress.completed_at is not None:
                return MissionEligibility(
                    eligible=False,
                    reason="Mission already completed",
                    progress=current,
                    target=target,
                    already_completed=True,
                )

            reason = await tracker.ineligibility_reason(member, mission, self._clock())
            if reason is None and current < target:
                reason = "Mission target not reached"
            return MissionEligibility(eligible=reason is None, reason=reason, progress=current, target=target)


__all__ = [
    "LedgerHistory",
    "LoyaltyEngine",
    "MissionCompletion",
    "MissionEligibility",
    "SpinEligibility",
    "SpinHistory",
    "SpinResult",
    "TierStatus",
    "retry_on_conflict",
]
