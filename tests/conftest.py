import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import loyalty_engine.models  # noqa: E402,F401
from loyalty_engine.db.base import Base  # noqa: E402
from loyalty_engine.observability import get_job_scheduler_store, get_loyalty_store  # noqa: E402
from loyalty_engine.services import LoyaltyAdminService, LoyaltyEngine, TierDefinition  # noqa: E402

FIXED_NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def reset_observability():
    get_loyalty_store().reset()
    get_job_scheduler_store().reset()
    yield


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def admin(session_factory, clock) -> LoyaltyAdminService:
    return LoyaltyAdminService(session_factory, clock=clock)


@pytest.fixture
def engine(session_factory, clock) -> LoyaltyEngine:
    return LoyaltyEngine(session_factory, clock=clock, rng=lambda: 0.5)


STANDARD_LADDER = [
    TierDefinition(name="Bronze", min_points=0, max_points=999, order=1),
    TierDefinition(name="Silver", min_points=1000, max_points=4999, order=2),
    TierDefinition(name="Gold", min_points=5000, max_points=None, order=3),
]


@pytest.fixture
def standard_ladder() -> list[TierDefinition]:
    return list(STANDARD_LADDER)


@pytest_asyncio.fixture
async def brand(admin):
    created = await admin.create_brand("Acme Coffee", points_per_currency_unit=2)
    await admin.configure_tier_ladder(created.id, STANDARD_LADDER)
    return created


@pytest_asyncio.fixture
async def member(admin, brand):
    return await admin.enroll_member(brand.id, external_ref="cust-001")
