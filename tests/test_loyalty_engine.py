import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from loyalty_engine.core.settings import settings
from loyalty_engine.models import LoyaltyLedgerEntry, LoyaltyMember, LoyaltySpinRecord, LoyaltyTier
from loyalty_engine.observability import get_loyalty_store
from loyalty_engine.services import LoyaltyEngine, SegmentDefinition
from loyalty_engine.services.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    InsufficientPointsError,
    NotEligibleError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)


async def _daily_wheel(admin, brand, **overrides):
    params = {
        "name": "Daily Wheel",
        "cost_to_spin": 0,
        "max_spins_per_day": 3,
        "segments": [
            SegmentDefinition("Ten", 0.5, reward_points=10),
            SegmentDefinition("Twenty", 0.5, reward_points=20),
        ],
    }
    params.update(overrides)
    return await admin.create_wheel(brand.id, **params)


@pytest.mark.asyncio
async def test_concurrent_spins_respect_daily_quota(admin, brand, member, engine, session_factory) -> None:
    wheel = await _daily_wheel(admin, brand)

    results = await asyncio.gather(
        *(engine.spin_wheel(brand.id, member.id, wheel.id) for _ in range(4)),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, BaseException)]
    failures = [result for result in results if isinstance(result, BaseException)]
    assert len(successes) == 3
    assert len(failures) == 1
    assert isinstance(failures[0], QuotaExceededError)
    assert sorted(result.remaining_spins for result in successes) == [0, 1, 2]

    async with session_factory() as session:
        spins = await session.execute(select(func.count(LoyaltySpinRecord.id)))
        assert spins.scalar_one() == 3


@pytest.mark.asyncio
async def test_spin_uses_injected_random_source(admin, brand, member, session_factory, clock) -> None:
    wheel = await _daily_wheel(admin, brand)
    engine = LoyaltyEngine(session_factory, clock=clock, rng=lambda: 0.75)

    result = await engine.spin_wheel(brand.id, member.id, wheel.id)
    assert result.segment.label == "Twenty"
    assert result.points_delta == 20
    assert result.new_balance == 20

    explicit = await engine.spin_wheel(brand.id, member.id, wheel.id, draw=0.1)
    assert explicit.segment.label == "Ten"
    assert explicit.new_balance == 30


@pytest.mark.asyncio
async def test_spin_cost_exceeding_balance(admin, brand, member, engine, session_factory) -> None:
    wheel = await _daily_wheel(admin, brand, cost_to_spin=25)

    with pytest.raises(InsufficientPointsError):
        await engine.spin_wheel(brand.id, member.id, wheel.id)

    async with session_factory() as session:
        spins = await session.execute(select(func.count(LoyaltySpinRecord.id)))
        assert spins.scalar_one() == 0
        entries = await session.execute(select(func.count(LoyaltyLedgerEntry.id)))
        assert entries.scalar_one() == 0


@pytest.mark.asyncio
async def test_non_spinnable_wheel_is_not_eligible(admin, brand, member, engine) -> None:
    wheel = await admin.create_wheel(
        brand.id,
        name="Broken",
        segments=[SegmentDefinition("A", 0.6, reward_points=1), SegmentDefinition("B", 0.37)],
    )
    with pytest.raises(NotEligibleError):
        await engine.spin_wheel(brand.id, member.id, wheel.id)


@pytest.mark.asyncio
async def test_double_completion_rewards_once(admin, brand, member, engine) -> None:
    mission = await admin.create_mission(brand.id, name="First order", target=1, reward_points=100)
    await engine.record_mission_progress(brand.id, member.id, mission.id, 1)

    first, second = await asyncio.gather(
        engine.complete_mission(brand.id, member.id, mission.id),
        engine.complete_mission(brand.id, member.id, mission.id),
    )

    assert sorted([first.already_completed, second.already_completed]) == [False, True]
    assert first.reward == second.reward == 100
    assert await engine.get_balance(brand.id, member.id) == 100

    replay = await engine.complete_mission(brand.id, member.id, mission.id)
    assert replay.already_completed is True
    assert replay.new_balance == 100

    history = await engine.get_ledger_history(brand.id, member.id)
    assert [entry.points_delta for entry in history.entries] == [100]
    assert get_loyalty_store().snapshot().missions == {"completed": 1, "replayed": 2}


@pytest.mark.asyncio
async def test_completion_before_target_is_not_eligible(admin, brand, member, engine) -> None:
    mission = await admin.create_mission(brand.id, name="Five visits", target=5, reward_points=10)
    await engine.record_mission_progress(brand.id, member.id, mission.id, 3)

    with pytest.raises(NotEligibleError):
        await engine.complete_mission(brand.id, member.id, mission.id)


@pytest.mark.asyncio
async def test_adjustment_below_zero_leaves_balance_untouched(brand, member, engine) -> None:
    await engine.adjust_points(brand.id, member.id, 30, "Welcome credit")

    with pytest.raises(InsufficientPointsError):
        await engine.adjust_points(brand.id, member.id, -50, "Too large")

    assert await engine.get_balance(brand.id, member.id) == 30
    history = await engine.get_ledger_history(brand.id, member.id)
    assert history.pagination.total == 1


@pytest.mark.asyncio
async def test_balance_equals_history_sum(admin, brand, member, engine) -> None:
    wheel = await _daily_wheel(admin, brand, cost_to_spin=5)
    await engine.record_purchase(brand.id, member.id, "40.00", order_ref="order-42")
    await engine.spin_wheel(brand.id, member.id, wheel.id)
    await engine.adjust_points(brand.id, member.id, -7, "Correction")
    await engine.award_bonus(brand.id, member.id, 15, "Birthday")

    balance = await engine.get_balance(brand.id, member.id)
    history = await engine.get_ledger_history(brand.id, member.id, page_size=100)
    assert balance == sum(entry.points_delta for entry in history.entries)
    assert [entry.sequence for entry in history.entries] == [4, 3, 2, 1]
    assert history.entries[0].balance_after == balance


@pytest.mark.asyncio
async def test_tier_status_tracks_balance(brand, member, engine) -> None:
    status = await engine.get_tier_status(brand.id, member.id)
    assert status.current_tier.name == "Bronze"
    assert status.next_tier.name == "Silver"
    assert status.progress.points_to_next == 1000

    outcome = await engine.adjust_points(brand.id, member.id, 6000, "Status match")
    assert outcome.tier_changed is True
    assert outcome.new_tier.name == "Gold"

    status = await engine.get_tier_status(brand.id, member.id)
    assert status.current_tier.name == "Gold"
    assert status.next_tier is None
    assert status.progress.percentage == 1.0


@pytest.mark.asyncio
async def test_cross_brand_access_is_not_found(admin, brand, member, engine) -> None:
    other = await admin.create_brand("Other Brand")
    other_wheel = await _daily_wheel(admin, other)

    with pytest.raises(NotFoundError):
        await engine.adjust_points(other.id, member.id, 10, "Wrong brand")
    with pytest.raises(NotFoundError):
        await engine.spin_wheel(brand.id, member.id, other_wheel.id)
    with pytest.raises(NotFoundError):
        await engine.get_balance(brand.id, uuid4())


@pytest.mark.asyncio
async def test_inactive_member_cannot_earn_but_can_be_read(admin, brand, member, engine) -> None:
    await engine.adjust_points(brand.id, member.id, 10, "Seed")
    await admin.deactivate_member(brand.id, member.id)

    with pytest.raises(NotEligibleError):
        await engine.adjust_points(brand.id, member.id, 10, "After deactivation")
    assert await engine.get_balance(brand.id, member.id) == 10


@pytest.mark.asyncio
async def test_reverse_entry_through_engine(brand, member, engine) -> None:
    purchase = await engine.record_purchase(brand.id, member.id, 10)
    reversal = await engine.reverse_entry(brand.id, member.id, purchase.entry.id, "Order cancelled")
    assert reversal.new_balance == 0
    assert await engine.get_balance(brand.id, member.id) == 0


@pytest.mark.asyncio
async def test_refund_through_engine(brand, member, engine) -> None:
    await engine.record_purchase(brand.id, member.id, 30)
    refund = await engine.record_refund(brand.id, member.id, 10, order_ref="order-7")
    assert refund.new_balance == 40


@pytest.mark.asyncio
async def test_stale_member_version_is_retried(brand, member, session_factory, clock, monkeypatch) -> None:
    monkeypatch.setattr(settings, "conflict_retry_base_seconds", 0.0)
    engine = LoyaltyEngine(session_factory, clock=clock)
    calls = {"count": 0}
    original = engine._member

    async def bump_version_once(session, brand_id, member_id, **kwargs):
        loaded = await original(session, brand_id, member_id, **kwargs)
        if calls["count"] == 0:
            # a concurrent writer bumps the row version behind the loaded copy
            await session.execute(
                update(LoyaltyMember)
                .where(LoyaltyMember.id == member_id)
                .values(version=LoyaltyMember.version + 1)
                .execution_options(synchronize_session=False)
            )
        calls["count"] += 1
        return loaded

    monkeypatch.setattr(engine, "_member", bump_version_once)

    outcome = await engine.adjust_points(brand.id, member.id, 25, "Retry me")
    assert outcome.new_balance == 25
    assert calls["count"] == 2
    assert get_loyalty_store().snapshot().concurrency["conflicts"] == 1
    assert get_loyalty_store().snapshot().ledger == {"appends": 1, "kind:adjustment": 1}


@pytest.mark.asyncio
async def test_conflicts_give_up_after_max_tries(brand, member, session_factory, clock, monkeypatch) -> None:
    monkeypatch.setattr(settings, "conflict_retry_base_seconds", 0.0)
    monkeypatch.setattr(settings, "conflict_retry_max_tries", 2)
    engine = LoyaltyEngine(session_factory, clock=clock)
    calls = {"count": 0}

    async def always_conflict(session, brand_id, member_id, **kwargs):
        calls["count"] += 1
        raise ConcurrencyConflictError("simulated")

    monkeypatch.setattr(engine, "_member", always_conflict)

    with pytest.raises(ConcurrencyConflictError):
        await engine.adjust_points(brand.id, member.id, 5, "Never lands")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_completed_mission_replays_after_deactivation(admin, brand, member, engine) -> None:
    done = await admin.create_mission(brand.id, name="Signup", target=1, reward_points=40)
    pending = await admin.create_mission(brand.id, name="Second visit", target=1, reward_points=10)
    await engine.record_mission_progress(brand.id, member.id, done.id, 1)
    await engine.record_mission_progress(brand.id, member.id, pending.id, 1)
    await engine.complete_mission(brand.id, member.id, done.id)

    await admin.deactivate_member(brand.id, member.id)

    replay = await engine.complete_mission(brand.id, member.id, done.id)
    assert replay.already_completed is True
    assert replay.reward == 40
    assert replay.new_balance == 40

    with pytest.raises(NotEligibleError, match="Member is not active"):
        await engine.complete_mission(brand.id, member.id, pending.id)


@pytest.mark.asyncio
async def test_mission_requirements_gate_first_completion(admin, brand, member, engine) -> None:
    silver_only = await admin.create_mission(
        brand.id, name="Silver lounge", target=1, reward_points=50, required_tier_order=2
    )
    high_balance = await admin.create_mission(
        brand.id, name="Big spender", target=1, reward_points=5, min_points_required=2000
    )
    for mission in (silver_only, high_balance):
        await engine.record_mission_progress(brand.id, member.id, mission.id, 1)

    blocked = await engine.get_mission_eligibility(brand.id, member.id, silver_only.id)
    assert blocked.eligible is False
    assert blocked.reason == "Member tier requirement not met"
    with pytest.raises(NotEligibleError, match="tier requirement"):
        await engine.complete_mission(brand.id, member.id, silver_only.id)

    await engine.adjust_points(brand.id, member.id, 1200, "Status match")

    assert (await engine.get_mission_eligibility(brand.id, member.id, silver_only.id)).eligible is True
    completion = await engine.complete_mission(brand.id, member.id, silver_only.id)
    assert completion.reward == 50
    assert completion.new_balance == 1250

    points_gate = await engine.get_mission_eligibility(brand.id, member.id, high_balance.id)
    assert points_gate.eligible is False
    assert points_gate.reason == "Minimum points requirement not met"

    done = await engine.get_mission_eligibility(brand.id, member.id, silver_only.id)
    assert done.already_completed is True
    assert done.eligible is False


@pytest.mark.asyncio
async def test_mission_eligibility_reports_unmet_target(admin, brand, member, engine) -> None:
    mission = await admin.create_mission(brand.id, name="Three visits", target=3, reward_points=10)
    await engine.record_mission_progress(brand.id, member.id, mission.id, 2)

    report = await engine.get_mission_eligibility(brand.id, member.id, mission.id)
    assert report.eligible is False
    assert report.reason == "Mission target not reached"
    assert report.progress == 2
    assert report.target == 3


@pytest.mark.asyncio
async def test_create_mission_rejects_negative_requirements(admin, brand) -> None:
    with pytest.raises(ValidationError):
        await admin.create_mission(brand.id, name="Bad", target=1, reward_points=1, min_points_required=-5)


@pytest.mark.asyncio
async def test_spin_eligibility_is_a_dry_run(admin, brand, member, engine, session_factory) -> None:
    wheel = await _daily_wheel(admin, brand, cost_to_spin=10, max_spins_per_day=2)

    broke = await engine.get_spin_eligibility(brand.id, member.id, wheel.id)
    assert broke.eligible is False
    assert broke.reason == "Insufficient points"
    assert broke.remaining_spins == 2
    assert broke.cost_to_spin == 10

    await engine.adjust_points(brand.id, member.id, 100, "Seed")
    ready = await engine.get_spin_eligibility(brand.id, member.id, wheel.id)
    assert ready.eligible is True
    assert ready.balance == 100

    await engine.spin_wheel(brand.id, member.id, wheel.id)
    await engine.spin_wheel(brand.id, member.id, wheel.id)
    exhausted = await engine.get_spin_eligibility(brand.id, member.id, wheel.id)
    assert exhausted.eligible is False
    assert exhausted.remaining_spins == 0
    assert exhausted.reason == "Daily spin limit reached"
    assert "quota_rejected" not in get_loyalty_store().snapshot().spins

    async with session_factory() as session:
        spins = await session.execute(select(func.count(LoyaltySpinRecord.id)))
        assert spins.scalar_one() == 2


@pytest.mark.asyncio
async def test_spin_history_pages_and_filters(admin, brand, member, engine) -> None:
    daily = await _daily_wheel(admin, brand)
    other = await _daily_wheel(admin, brand, name="Weekend Wheel")
    await engine.spin_wheel(brand.id, member.id, daily.id)
    await engine.spin_wheel(brand.id, member.id, daily.id)
    await engine.spin_wheel(brand.id, member.id, other.id)

    everything = await engine.get_spin_history(brand.id, member.id)
    assert everything.pagination.total == 3

    first_page = await engine.get_spin_history(brand.id, member.id, wheel_id=daily.id, page_size=1)
    assert first_page.pagination.total == 2
    assert first_page.pagination.has_next is True
    assert len(first_page.spins) == 1
    assert first_page.spins[0].wheel_id == daily.id

    foreign = await admin.create_brand("Elsewhere")
    foreign_wheel = await _daily_wheel(admin, foreign)
    with pytest.raises(NotFoundError):
        await engine.get_spin_history(brand.id, member.id, wheel_id=foreign_wheel.id)


@pytest.mark.asyncio
async def test_inactive_brand_blocks_writes(admin, brand, member, engine) -> None:
    await engine.adjust_points(brand.id, member.id, 10, "Seed")
    await admin.set_brand_active(brand.id, False)

    with pytest.raises(NotEligibleError, match="Brand is not active"):
        await engine.adjust_points(brand.id, member.id, 10, "Suspended")
    assert await engine.get_balance(brand.id, member.id) == 10

    await admin.set_brand_active(brand.id, True)
    outcome = await engine.adjust_points(brand.id, member.id, 10, "Resumed")
    assert outcome.new_balance == 20


@pytest.mark.asyncio
async def test_deactivated_wheel_cannot_be_spun(admin, brand, member, engine) -> None:
    wheel = await _daily_wheel(admin, brand)
    await admin.set_wheel_active(brand.id, wheel.id, False)

    with pytest.raises(NotEligibleError, match="Wheel is not active"):
        await engine.spin_wheel(brand.id, member.id, wheel.id)
    assert (await engine.get_spin_eligibility(brand.id, member.id, wheel.id)).reason == "Wheel is not active"

    await admin.set_wheel_active(brand.id, wheel.id, True)
    result = await engine.spin_wheel(brand.id, member.id, wheel.id)
    assert result.remaining_spins == 2


@pytest.mark.asyncio
async def test_broken_persisted_ladder_fails_resolution(brand, member, engine, session_factory) -> None:
    async with session_factory() as session:
        session.add(LoyaltyTier(brand_id=brand.id, name="Overlap", min_points=500, max_points=1500, order=4))
        await session.commit()

    with pytest.raises(ConfigurationError):
        await engine.adjust_points(brand.id, member.id, 10, "Blocked by ladder")
    with pytest.raises(ConfigurationError):
        await engine.get_tier_status(brand.id, member.id)

    assert await engine.get_balance(brand.id, member.id) == 0
    history = await engine.get_ledger_history(brand.id, member.id)
    assert history.pagination.total == 0


@pytest.mark.asyncio
async def test_point_deltas_outside_column_range_are_rejected(brand, member, engine) -> None:
    with pytest.raises(ValidationError):
        await engine.adjust_points(brand.id, member.id, 10**20, "Overflow")

    await engine.adjust_points(brand.id, member.id, 2**31 - 1, "Ceiling")
    with pytest.raises(ValidationError):
        await engine.adjust_points(brand.id, member.id, 1, "Past the ceiling")
    assert await engine.get_balance(brand.id, member.id) == 2**31 - 1
