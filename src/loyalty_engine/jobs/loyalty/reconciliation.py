"""Jobs that realign cached member balances and tiers with the ledger."""

# meta: job: loyalty-reconciliation

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from loyalty_engine.models.loyalty import LoyaltyMember
from loyalty_engine.services.errors import ConfigurationError
from loyalty_engine.services.ledger.store import LedgerStore
from loyalty_engine.services.rewards.applicator import RewardApplicator

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def reconcile_member_balances(
    *,
    session_factory: SessionFactory,
    brand_id: UUID | None = None,
) -> Dict[str, Any]:
    """Recompute every member's balance from the ledger and refresh tiers."""

    session = await open_session(session_factory)
    async with session as managed_session:
        stmt = select(LoyaltyMember.id).order_by(LoyaltyMember.created_at.asc())
        if brand_id is not None:
            stmt = stmt.where(LoyaltyMember.brand_id == brand_id)
        member_ids = list((await managed_session.execute(stmt)).scalars().all())

    summary = {
        "members_checked": 0,
        "balances_corrected": 0,
        "tiers_corrected": 0,
        "conflicts": 0,
        "broken_ladders": 0,
    }
    for member_id in member_ids:
        session = await open_session(session_factory)
        async with session as managed_session:
            try:
                async with managed_session.begin():
                    balance_fixed, tier_fixed = await _reconcile_member(managed_session, member_id)
            except (IntegrityError, StaleDataError):
                summary["conflicts"] += 1
                logger.warning("Skipped loyalty reconciliation after concurrent write", member_id=str(member_id))
                continue
            except ConfigurationError as error:
                summary["broken_ladders"] += 1
                logger.error(
                    "Loyalty reconciliation hit a broken tier ladder",
                    member_id=str(member_id),
                    brand_id=str(error.brand_id),
                )
                continue
        summary["members_checked"] += 1
        summary["balances_corrected"] += int(balance_fixed)
        summary["tiers_corrected"] += int(tier_fixed)

    logger.bind(summary=summary).info("Loyalty balance reconciliation completed")
    return summary


async def _reconcile_member(session: AsyncSession, member_id: UUID) -> tuple[bool, bool]:
    ledger = LedgerStore(session)
    member = await ledger.lock_member(member_id)
    if member is None:
        return False, False
    cached = member.points_balance
    balance, _ = await ledger.reconcile(member)
    tier_changed, _ = await RewardApplicator(session, ledger=ledger).refresh_tier(member)
    return cached != balance, tier_changed


__all__ = ["reconcile_member_balances"]
