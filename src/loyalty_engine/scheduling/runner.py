"""APScheduler runtime for loyalty maintenance jobs."""

from __future__ import annotations

import inspect
import random
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

import backoff
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from loyalty_engine.observability.scheduler import get_job_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]


def resolve_task(task: str) -> Callable[..., Awaitable[Any]]:
    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


class LoyaltyJobScheduler:
    """Register cron-triggered maintenance jobs and retry failed runs."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._store = get_job_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.jobs:
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(self.build_runner(job), trigger=trigger, id=job.id, replace_existing=True)
            logger.info("Registered loyalty maintenance job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Loyalty job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Loyalty job scheduler stopped")

    def build_runner(
        self, job: JobDefinition, func: Callable[..., Awaitable[Any]] | None = None
    ) -> Callable[[], Awaitable[Any]]:
        """Wrap a job task with bounded exponential retries and run accounting."""

        func = func or resolve_task(job.task)
        attempts = {"count": 0}

        def _jitter(value: float) -> float:
            return value + random.uniform(0, job.jitter_seconds) if job.jitter_seconds else value

        def _on_backoff(details: dict[str, Any]) -> None:
            error = details.get("exception")
            self._store.record_retry(job.id, job.task, attempts=details["tries"], error=str(error))
            logger.warning(
                "Scheduled loyalty job retrying",
                job_id=job.id,
                task=job.task,
                attempt=details["tries"] + 1,
                delay_seconds=round(details["wait"], 3),
            )

        @backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=job.max_attempts,
            base=job.backoff_multiplier,
            factor=job.base_backoff_seconds,
            max_value=job.max_backoff_seconds or None,
            jitter=_jitter,
            on_backoff=_on_backoff,
            logger=None,
        )
        async def _attempt() -> Any:
            attempts["count"] += 1
            return await func(session_factory=self._session_factory, **job.kwargs)

        async def _runner() -> Any:
            attempts["count"] = 0
            self._store.record_dispatch(job.id, job.task)
            try:
                result = await _attempt()
            except Exception as exc:
                self._store.record_result(job.id, job.task, attempts=attempts["count"], error=str(exc))
                logger.exception(
                    "Scheduled loyalty job failed after retries",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempts["count"],
                )
                return None
            self._store.record_result(job.id, job.task, attempts=attempts["count"])
            logger.info("Scheduled loyalty job completed", job_id=job.id, task=job.task, attempts=attempts["count"])
            return result

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._store.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "metrics": snapshot.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["LoyaltyJobScheduler", "resolve_task"]
