"""Command line entrypoint for loyalty maintenance tasks."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Sequence

from loguru import logger

from .core.logging import configure_logging
from .core.settings import settings
from .db.base import Base
from .db.session import async_session, engine
from .scheduling import LoyaltyJobScheduler, load_job_definitions
from .scheduling.runner import resolve_task


async def _init_db() -> None:
    import loyalty_engine.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Loyalty schema created", database_url=settings.database_url.split("@")[-1])


async def _run_scheduler(config_path: Path) -> None:
    if not settings.job_scheduler_enabled:
        logger.warning("Loyalty job scheduler disabled; set LOYALTY_JOB_SCHEDULER_ENABLED=true to run it")
        return
    scheduler = LoyaltyJobScheduler(session_factory=async_session, config_path=config_path)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await engine.dispose()


async def _run_job(config_path: Path, job_id: str) -> None:
    config = load_job_definitions(config_path)
    job = next((item for item in config.jobs if item.id == job_id), None)
    if job is None:
        raise SystemExit(f"Unknown job: {job_id}")
    try:
        summary = await resolve_task(job.task)(session_factory=async_session, **job.kwargs)
        logger.bind(summary=summary).info("Loyalty job finished", job_id=job_id)
    finally:
        await engine.dispose()


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="loyalty-engine")
    parser.add_argument("--schedule", default=settings.job_schedule_path, help="Path to the job schedule TOML file")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init-db", help="Create loyalty tables on the configured database")
    commands.add_parser("scheduler", help="Run the maintenance job scheduler until interrupted")
    run_job = commands.add_parser("run-job", help="Run one scheduled job immediately")
    run_job.add_argument("job_id")
    args = parser.parse_args(argv)

    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.version,
        level=settings.log_level,
    )
    config_path = Path(args.schedule)

    try:
        if args.command == "init-db":
            asyncio.run(_init_db())
        elif args.command == "scheduler":
            asyncio.run(_run_scheduler(config_path))
        else:
            asyncio.run(_run_job(config_path, args.job_id))
    except KeyboardInterrupt:
        logger.info("Loyalty engine interrupted")


if __name__ == "__main__":
    main()
