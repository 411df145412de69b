from .tracker import CompletionResult, MissionTracker  # noqa: F401
