from .config import JobDefinition, ScheduleConfig, load_job_definitions  # noqa: F401
from .runner import LoyaltyJobScheduler  # noqa: F401
