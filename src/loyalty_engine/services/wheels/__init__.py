from .resolver import (  # noqa: F401
    WheelResolver,
    active_segments,
    expected_points,
    normalize_probabilities,
    quota_day,
    select_segment,
    validate_segments,
)
