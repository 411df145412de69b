from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on read)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def within_window(now: datetime, starts_at: datetime | None, ends_at: datetime | None) -> bool:
    starts = as_utc(starts_at)
    ends = as_utc(ends_at)
    if starts and now < starts:
        return False
    if ends and now > ends:
        return False
    return True
