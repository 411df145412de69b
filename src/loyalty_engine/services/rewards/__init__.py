from .applicator import MissionApplication, RewardApplicator, RewardOutcome, SpinApplication  # noqa: F401
