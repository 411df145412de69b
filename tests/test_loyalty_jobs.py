from datetime import timedelta

import pytest
from sqlalchemy import update

from loyalty_engine.jobs.loyalty import expire_missions, reconcile_member_balances
from loyalty_engine.models import LoyaltyMember, LoyaltyMission, LoyaltyTier


@pytest.mark.asyncio
async def test_reconciliation_repairs_cached_balance_and_tier(admin, brand, member, engine, session_factory) -> None:
    healthy = await admin.enroll_member(brand.id, external_ref="cust-002")
    await engine.adjust_points(brand.id, member.id, 1500, "Seed")
    await engine.adjust_points(brand.id, healthy.id, 20, "Seed")

    async with session_factory() as session:
        await session.execute(
            update(LoyaltyMember)
            .where(LoyaltyMember.id == member.id)
            .values(points_balance=10, current_tier_id=None)
        )
        await session.commit()

    summary = await reconcile_member_balances(session_factory=session_factory)

    assert summary["members_checked"] == 2
    assert summary["balances_corrected"] == 1
    assert summary["tiers_corrected"] == 1
    assert summary["conflicts"] == 0

    async with session_factory() as session:
        repaired = await session.get(LoyaltyMember, member.id)
        assert repaired.points_balance == 1500
        assert repaired.current_tier_id is not None

    second = await reconcile_member_balances(session_factory=session_factory, brand_id=brand.id)
    assert second["balances_corrected"] == 0
    assert second["tiers_corrected"] == 0


@pytest.mark.asyncio
async def test_mission_expiry_job(admin, brand, session_factory, clock) -> None:
    stale = await admin.create_mission(
        brand.id,
        name="Last week",
        target=1,
        reward_points=5,
        ends_at=clock.now - timedelta(hours=1),
    )

    summary = await expire_missions(session_factory=session_factory, clock=clock)
    assert summary == {"missions_expired": 1}

    async with session_factory() as session:
        assert (await session.get(LoyaltyMission, stale.id)).is_active is False

    assert await expire_missions(session_factory=session_factory, clock=clock) == {"missions_expired": 0}


@pytest.mark.asyncio
async def test_reconciliation_counts_broken_ladders(brand, member, engine, session_factory) -> None:
    await engine.adjust_points(brand.id, member.id, 700, "Seed")
    async with session_factory() as session:
        session.add(LoyaltyTier(brand_id=brand.id, name="Overlap", min_points=500, max_points=1500, order=4))
        await session.commit()

    summary = await reconcile_member_balances(session_factory=session_factory)

    assert summary["broken_ladders"] == 1
    assert summary["members_checked"] == 0
    assert summary["balances_corrected"] == 0

    async with session_factory() as session:
        untouched = await session.get(LoyaltyMember, member.id)
        assert untouched.points_balance == 700
