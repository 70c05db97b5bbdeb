from __future__ import annotations

from datetime import datetime, timedelta, timezone


WINDOW_LENGTH = timedelta(hours=1)


def utc_now() -> datetime:
    # Use UTC for consistent window boundaries.
    return datetime.now(timezone.utc)


def current_window(now: datetime) -> datetime:
    # Truncate to the start of the UTC hour; naive values are taken as UTC.
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return now.replace(minute=0, second=0, microsecond=0)


def next_window(now: datetime) -> datetime:
    return current_window(now) + WINDOW_LENGTH
