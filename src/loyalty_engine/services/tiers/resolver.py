"""Resolve members onto a brand's tier ladder."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Protocol, Sequence, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import LoyaltyTier
from loyalty_engine.services.errors import ConfigurationError


class TierLike(Protocol):
    name: str
    min_points: int
    max_points: int | None
    order: int


T = TypeVar("T", bound=TierLike)


@dataclass(frozen=True)
class TierProgress:
    points_to_next: int
    percentage: float


def validate_ladder(tiers: Sequence[T], *, brand_id: object | None = None) -> list[T]:
    """Return the ladder sorted by threshold, or raise ConfigurationError.

    A valid ladder starts at zero, has no gaps or overlaps, ascends in
    ``order`` with ``min_points``, and ends with exactly one unbounded tier.
    """

    if not tiers:
        return []

    ladder = sorted(tiers, key=lambda tier: tier.min_points)
    if ladder[0].min_points != 0:
        raise ConfigurationError("Tier ladder must start at 0 points", brand_id=brand_id)

    for index, tier in enumerate(ladder):
        if tier.max_points is not None and tier.max_points < tier.min_points:
            raise ConfigurationError(f"Tier '{tier.name}' has max_points below min_points", brand_id=brand_id)
        if index == 0:
            continue
        previous = ladder[index - 1]
        if previous.max_points is None:
            raise ConfigurationError(f"Only the top tier may be unbounded, not '{previous.name}'", brand_id=brand_id)
        if tier.min_points != previous.max_points + 1:
            kind = "gap" if tier.min_points > previous.max_points + 1 else "overlap"
            raise ConfigurationError(
                f"Tier ladder has a {kind} between '{previous.name}' and '{tier.name}'",
                brand_id=brand_id,
            )
        if tier.order <= previous.order:
            raise ConfigurationError("Tier order must increase with min_points", brand_id=brand_id)

    if ladder[-1].max_points is not None:
        raise ConfigurationError("Top tier must have no max_points", brand_id=brand_id)
    return ladder


def locate(ladder: Sequence[T], balance: int) -> T | None:
    """Pick the tier whose range contains ``balance`` from a validated ladder.

    Negative balances land on the bottom tier.
    """

    if not ladder:
        return None
    thresholds = [tier.min_points for tier in ladder]
    index = bisect_right(thresholds, balance) - 1
    return ladder[max(index, 0)]


def following(ladder: Sequence[T], tier: T | None) -> T | None:
    if tier is None:
        return None
    for index, candidate in enumerate(ladder):
        if candidate is tier and index + 1 < len(ladder):
            return ladder[index + 1]
    return None


def progress(balance: int, current: TierLike | None, next_tier: TierLike | None) -> TierProgress:
    """Distance to the next tier and fraction of the current range covered."""

    if current is None or next_tier is None:
        return TierProgress(points_to_next=0, percentage=1.0)

    points_to_next = max(next_tier.min_points - balance, 0)
    upper = current.max_points if current.max_points is not None else next_tier.min_points - 1
    span = upper - current.min_points + 1
    if span <= 0:
        return TierProgress(points_to_next=points_to_next, percentage=1.0)
    percentage = (balance - current.min_points) / span
    return TierProgress(points_to_next=points_to_next, percentage=min(max(percentage, 0.0), 1.0))


class TierResolver:
    """Load and resolve tier ladders for a brand."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def load_ladder(self, brand_id: UUID) -> list[LoyaltyTier]:
        stmt = select(LoyaltyTier).where(LoyaltyTier.brand_id == brand_id).order_by(LoyaltyTier.min_points.asc())
        result = await self._db.execute(stmt)
        tiers = list(result.scalars().all())
        try:
            return validate_ladder(tiers, brand_id=brand_id)
        except ConfigurationError as error:
            logger.error("Invalid loyalty tier ladder", brand_id=str(brand_id), error=str(error))
            raise

    async def resolve(self, brand_id: UUID, balance: int) -> LoyaltyTier | None:
        ladder = await self.load_ladder(brand_id)
        return locate(ladder, balance)

    async def status(
        self, brand_id: UUID, balance: int
    ) -> tuple[LoyaltyTier | None, LoyaltyTier | None, TierProgress]:
        """Return (current tier, next tier, progress) for a balance."""

        ladder = await self.load_ladder(brand_id)
        current = locate(ladder, balance)
        next_tier = following(ladder, current)
        return current, next_tier, progress(balance, current, next_tier)


__all__ = ["TierProgress", "TierResolver", "following", "locate", "progress", "validate_ladder"]
