from .resolver import TierProgress, TierResolver, locate, progress, validate_ladder  # noqa: F401
