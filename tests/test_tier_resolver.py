import pytest

from loyalty_engine.services import TierDefinition
from loyalty_engine.services.errors import ConfigurationError
from loyalty_engine.services.tiers import TierResolver, locate, progress, validate_ladder
from loyalty_engine.services.tiers.resolver import following


def test_validate_ladder_sorts_by_threshold(standard_ladder) -> None:
    shuffled = [standard_ladder[2], standard_ladder[0], standard_ladder[1]]
    ladder = validate_ladder(shuffled)
    assert [tier.name for tier in ladder] == ["Bronze", "Silver", "Gold"]


@pytest.mark.parametrize(
    "tiers, message",
    [
        (
            [
                TierDefinition(name="Bronze", min_points=0, max_points=999, order=1),
                TierDefinition(name="Silver", min_points=1100, max_points=None, order=2),
            ],
            "gap",
        ),
        (
            [
                TierDefinition(name="Bronze", min_points=0, max_points=999, order=1),
                TierDefinition(name="Silver", min_points=900, max_points=None, order=2),
            ],
            "overlap",
        ),
        (
            [TierDefinition(name="Bronze", min_points=10, max_points=None, order=1)],
            "start at 0",
        ),
        (
            [
                TierDefinition(name="Bronze", min_points=0, max_points=None, order=1),
                TierDefinition(name="Silver", min_points=1000, max_points=None, order=2),
            ],
            "unbounded",
        ),
        (
            [
                TierDefinition(name="Bronze", min_points=0, max_points=999, order=1),
                TierDefinition(name="Silver", min_points=1000, max_points=1999, order=2),
            ],
            "no max_points",
        ),
        (
            [
                TierDefinition(name="Bronze", min_points=0, max_points=999, order=2),
                TierDefinition(name="Silver", min_points=1000, max_points=None, order=1),
            ],
            "order",
        ),
    ],
)
def test_validate_ladder_rejects_broken_ladders(tiers, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        validate_ladder(tiers)


def test_locate_uses_threshold_boundaries(standard_ladder) -> None:
    ladder = validate_ladder(standard_ladder)
    assert locate(ladder, 0).name == "Bronze"
    assert locate(ladder, 999).name == "Bronze"
    assert locate(ladder, 1000).name == "Silver"
    assert locate(ladder, 5000).name == "Gold"
    assert locate(ladder, 10_000_000).name == "Gold"
    assert locate(ladder, -25).name == "Bronze"
    assert locate([], 100) is None


def test_progress_within_and_at_top_tier(standard_ladder) -> None:
    ladder = validate_ladder(standard_ladder)
    bronze, silver, gold = ladder

    halfway = progress(500, bronze, silver)
    assert halfway.points_to_next == 500
    assert halfway.percentage == pytest.approx(0.5)

    assert progress(0, bronze, silver).percentage == 0.0
    assert progress(-10, bronze, silver).percentage == 0.0

    top = progress(8000, gold, None)
    assert top.points_to_next == 0
    assert top.percentage == 1.0

    assert following(ladder, silver) is gold
    assert following(ladder, gold) is None


@pytest.mark.asyncio
async def test_resolver_reads_brand_ladder(session_factory, brand) -> None:
    async with session_factory() as session:
        resolver = TierResolver(session)
        tier = await resolver.resolve(brand.id, 1500)
        assert tier.name == "Silver"

        current, next_tier, tier_progress = await resolver.status(brand.id, 4999)
        assert current.name == "Silver"
        assert next_tier.name == "Gold"
        assert tier_progress.points_to_next == 1
        assert tier_progress.percentage == pytest.approx(3999 / 4000)


@pytest.mark.asyncio
async def test_resolver_without_ladder_returns_none(admin, session_factory) -> None:
    bare = await admin.create_brand("No Tiers")
    async with session_factory() as session:
        assert await TierResolver(session).resolve(bare.id, 100) is None


@pytest.mark.asyncio
async def test_configure_tier_ladder_rejects_gaps(admin, brand) -> None:
    with pytest.raises(ConfigurationError):
        await admin.configure_tier_ladder(
            brand.id,
            [
                TierDefinition(name="Bronze", min_points=0, max_points=99, order=1),
                TierDefinition(name="Gold", min_points=200, max_points=None, order=2),
            ],
        )


def test_every_balance_maps_to_exactly_one_tier(standard_ladder) -> None:
    ladder = validate_ladder(standard_ladder)
    balances = sorted(set(range(0, 7000, 7)) | {999, 1000, 4999, 5000})

    previous_order = 0
    for balance in balances:
        matches = [
            tier
            for tier in ladder
            if tier.min_points <= balance and (tier.max_points is None or balance <= tier.max_points)
        ]
        assert len(matches) == 1
        tier = locate(ladder, balance)
        assert tier == matches[0]
        assert tier.order >= previous_order
        previous_order = tier.order
