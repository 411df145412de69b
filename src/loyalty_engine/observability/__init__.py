"""Observability stores for the loyalty engine."""

from .loyalty import (  # noqa: F401
    LoyaltyObservabilityStore,
    LoyaltySnapshot,
    get_loyalty_store,
    record_after_commit,
)
from .scheduler import JobSchedulerStore, get_job_scheduler_store  # noqa: F401
