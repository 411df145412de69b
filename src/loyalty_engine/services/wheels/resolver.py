"""Probability wheel validation, weighted selection and daily spin quotas."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Any, Protocol, Sequence, TypeVar
from uuid import UUID
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import (
    LoyaltyLedgerEntry,
    LoyaltyMember,
    LoyaltySpinRecord,
    LoyaltyWheel,
    LoyaltyWheelSegment,
    WheelRewardType,
)
from loyalty_engine.observability.loyalty import record_after_commit
from loyalty_engine.services.clock import as_utc, within_window
from loyalty_engine.services.errors import NotEligibleError, QuotaExceededError, ValidationError
from loyalty_engine.services.ledger.store import Pagination


class SegmentLike(Protocol):
    probability: float


S = TypeVar("S", bound=SegmentLike)


def active_segments(wheel: LoyaltyWheel) -> list[LoyaltyWheelSegment]:
    """Return the wheel's live segments in stored position order."""

    live = [segment for segment in wheel.segments if segment.retired_at is None]
    return sorted(live, key=lambda segment: segment.position)


def validate_segments(segments: Sequence[SegmentLike], *, epsilon: float | None = None) -> None:
    tolerance = settings.probability_epsilon if epsilon is None else epsilon
    if not segments:
        raise ValidationError("Wheel has no segments")

    probabilities: list[float] = []
    for index, segment in enumerate(segments):
        probability = segment.probability
        if probability is None or not math.isfinite(probability):
            raise ValidationError(f"Segment {index} has an invalid probability")
        if probability < 0:
            raise ValidationError(f"Segment {index} has a negative probability")
        probabilities.append(float(probability))

    total = math.fsum(probabilities)
    if abs(total - 1.0) > tolerance:
        raise ValidationError(f"Segment probabilities sum to {total:.6f}, expected 1.0")


def select_segment(segments: Sequence[S], draw: float) -> S:
    """Map a draw in [0, 1) onto the cumulative probability partition."""

    if not segments:
        raise ValidationError("Wheel has no segments")
    if not (0.0 <= draw < 1.0):
        raise ValidationError(f"Random draw {draw!r} outside [0, 1)")

    cumulative = 0.0
    for segment in segments:
        cumulative += segment.probability
        if draw < cumulative:
            return segment
    # float drift left the draw past the final bound
    return segments[-1]


def segment_points(segment: LoyaltyWheelSegment) -> int:
    if segment.reward_type == WheelRewardType.POINTS:
        return int(segment.reward_points or 0)
    return 0


def expected_points(segments: Sequence[LoyaltyWheelSegment]) -> float:
    """Expected prize points per spin."""

    return math.fsum(segment.probability * segment_points(segment) for segment in segments)


def normalize_probabilities(weights: Sequence[float]) -> list[float]:
    """Rescale non-negative weights so they sum to 1.0."""

    if not weights:
        return []
    if any(weight < 0 or not math.isfinite(weight) for weight in weights):
        raise ValidationError("Weights must be finite and non-negative")
    total = math.fsum(weights)
    if total == 0:
        return [1.0 / len(weights)] * len(weights)
    normalized = [weight / total for weight in weights]
    # absorb rounding residue into the last segment
    normalized[-1] = 1.0 - math.fsum(normalized[:-1])
    return normalized


def quota_day(now: datetime, timezone_name: str | None = None) -> date:
    zone = ZoneInfo(timezone_name or settings.quota_timezone)
    return as_utc(now).astimezone(zone).date()


class WheelResolver:
    """Spin eligibility, quota accounting and spin recording."""

    def __init__(self, session: AsyncSession, *, timezone_name: str | None = None) -> None:
        self._db = session
        self._timezone = timezone_name or settings.quota_timezone

    def refresh_spinnable(self, wheel: LoyaltyWheel) -> bool:
        try:
            validate_segments(active_segments(wheel))
        except ValidationError as error:
            if wheel.is_spinnable:
                logger.warning("Loyalty wheel marked non-spinnable", wheel_id=str(wheel.id), reason=str(error))
            wheel.is_spinnable = False
            return False
        wheel.is_spinnable = True
        return True

    def ensure_available(self, wheel: LoyaltyWheel, now: datetime) -> None:
        if not wheel.is_active:
            raise NotEligibleError("Wheel is not active")
        if not wheel.is_spinnable:
            raise NotEligibleError("Wheel is not spinnable")
        if not within_window(now, wheel.starts_at, wheel.ends_at):
            raise NotEligibleError("Wheel is outside its availability window")

    def select(self, wheel: LoyaltyWheel, draw: float) -> LoyaltyWheelSegment:
        return select_segment(active_segments(wheel), draw)

    async def count_spins(self, member_id: UUID, wheel_id: UUID, spin_day: date) -> int:
        stmt = select(func.count(LoyaltySpinRecord.id)).where(
            LoyaltySpinRecord.member_id == member_id,
            LoyaltySpinRecord.wheel_id == wheel_id,
            LoyaltySpinRecord.spin_day == spin_day,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def last_spin(self, member_id: UUID, wheel_id: UUID) -> LoyaltySpinRecord | None:
        stmt = (
            select(LoyaltySpinRecord)
            .where(LoyaltySpinRecord.member_id == member_id, LoyaltySpinRecord.wheel_id == wheel_id)
            .order_by(LoyaltySpinRecord.spun_at.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def remaining_spins(self, member_id: UUID, wheel: LoyaltyWheel, now: datetime) -> int | None:
        """Spins left on the current quota day; ``None`` when the wheel is unlimited."""

        if not wheel.max_spins_per_day:
            return None
        used = await self.count_spins(member_id, wheel.id, quota_day(now, self._timezone))
        return max(wheel.max_spins_per_day - used, 0)

    async def check_quota(self, member_id: UUID, wheel: LoyaltyWheel, now: datetime) -> int | None:
        """Return spins left before this one; ``None`` when the wheel is unlimited."""

        remaining = await self.remaining_spins(member_id, wheel, now)
        if remaining == 0:
            logger.info(
                "Loyalty spin quota exhausted",
                member_id=str(member_id),
                wheel_id=str(wheel.id),
                spin_day=quota_day(now, self._timezone).isoformat(),
            )
            raise QuotaExceededError(remaining_spins=0)

        if wheel.cooldown_seconds:
            previous = await self.last_spin(member_id, wheel.id)
            if previous is not None:
                available_at = as_utc(previous.spun_at) + timedelta(seconds=wheel.cooldown_seconds)
                if now < available_at:
                    raise QuotaExceededError(
                        "Wheel cooldown active",
                        remaining_spins=remaining,
                        retry_after=available_at,
                    )
        return remaining

    async def spin_history(
        self,
        member_id: UUID,
        *,
        wheel_id: UUID | None = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[LoyaltySpinRecord], Pagination]:
        """Return a page of the member's spins, most recent first."""

        bounded_size = max(1, min(page_size, settings.history_max_page_size))
        bounded_page = max(1, page)

        filters = [LoyaltySpinRecord.member_id == member_id]
        if wheel_id is not None:
            filters.append(LoyaltySpinRecord.wheel_id == wheel_id)

        count_stmt = select(func.count(LoyaltySpinRecord.id)).where(*filters)
        total = int((await self._db.execute(count_stmt)).scalar_one())

        stmt = (
            select(LoyaltySpinRecord)
            .where(*filters)
            .order_by(LoyaltySpinRecord.spun_at.desc(), LoyaltySpinRecord.daily_sequence.desc())
            .offset((bounded_page - 1) * bounded_size)
            .limit(bounded_size)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all()), Pagination(page=bounded_page, page_size=bounded_size, total=total)

    async def record_spin(
        self,
        *,
        member: LoyaltyMember,
        wheel: LoyaltyWheel,
        segment: LoyaltyWheelSegment,
        now: datetime,
        points_used: int,
        points_awarded: int,
        ledger_entry: LoyaltyLedgerEntry | None,
    ) -> LoyaltySpinRecord:
        day = quota_day(now, self._timezone)
        daily_sequence = await self.count_spins(member.id, wheel.id, day) + 1
        reward: dict[str, Any] = {
            "type": segment.reward_type.value,
            "label": segment.label,
            "points": segment_points(segment),
        }
        if segment.reward_metadata:
            reward["metadata"] = segment.reward_metadata

        record = LoyaltySpinRecord(
            wheel_id=wheel.id,
            member_id=member.id,
            brand_id=member.brand_id,
            segment_id=segment.id,
            spin_day=day,
            daily_sequence=daily_sequence,
            points_used=points_used,
            points_awarded=points_awarded,
            result_reward=reward,
            ledger_entry_id=ledger_entry.id if ledger_entry is not None else None,
            spun_at=now,
        )
        self._db.add(record)
        await self._db.flush()
        outcome = segment.reward_type.value
        record_after_commit(self._db, lambda store: store.record_spin(outcome))
        logger.info(
            "Recorded loyalty wheel spin",
            member_id=str(member.id),
            wheel_id=str(wheel.id),
            segment=segment.label,
            daily_sequence=daily_sequence,
        )
        return record


__all__ = [
    "WheelResolver",
    "active_segments",
    "expected_points",
    "normalize_probabilities",
    "quota_day",
    "segment_points",
    "select_segment",
    "validate_segments",
]
