"""Deactivate missions whose availability window has closed."""

# meta: job: loyalty-mission-expiry

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict

from loguru import logger

from loyalty_engine.jobs.loyalty.reconciliation import SessionFactory, open_session
from loyalty_engine.services.clock import utcnow
from loyalty_engine.services.missions.tracker import MissionTracker


async def expire_missions(
    *,
    session_factory: SessionFactory,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[str, Any]:
    session = await open_session(session_factory)
    async with session as managed_session:
        expired = await MissionTracker(managed_session).expire_missions(clock())
        await managed_session.commit()

    summary = {"missions_expired": expired}
    logger.bind(summary=summary).info("Loyalty mission expiry sweep completed")
    return summary


__all__ = ["expire_missions"]
