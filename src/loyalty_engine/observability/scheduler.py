"""Run statistics for the maintenance job scheduler."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


@dataclass
class JobRunStats:
    job_id: str
    task: str
    runs: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        for key in ("last_started_at", "last_finished_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value else None
        return payload


class JobSchedulerStore:
    """Thread-safe counters for scheduled job dispatches."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunStats] = {}

    def _stats(self, job_id: str, task: str) -> JobRunStats:
        stats = self._jobs.get(job_id)
        if stats is None:
            stats = self._jobs[job_id] = JobRunStats(job_id=job_id, task=task)
        return stats

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.runs += 1
            stats.last_started_at = datetime.now(timezone.utc)
            stats.last_attempts = 0

    def record_retry(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.retries += 1
            stats.last_attempts = attempts
            stats.last_error = error

    def record_result(self, job_id: str, task: str, *, attempts: int, error: str | None = None) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.last_finished_at = datetime.now(timezone.utc)
            stats.last_attempts = attempts
            stats.last_error = error
            if error is None:
                stats.successes += 1
            else:
                stats.failures += 1

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {job_id: stats.as_dict() for job_id, stats in self._jobs.items()}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = JobSchedulerStore()


def get_job_scheduler_store() -> JobSchedulerStore:
    return _SCHEDULER_STORE


__all__ = ["JobRunStats", "JobSchedulerStore", "get_job_scheduler_store"]
