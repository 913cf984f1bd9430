"""
Authoritative exam clock.

Recovery, heartbeats and the expiry sweep all call ``remaining_seconds`` so
they can never disagree about whether an attempt's time is up. No I/O here.
"""
from datetime import datetime, timezone
import math


def utcnow() -> datetime:
    """Naive UTC now, the form every timestamp is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC (remove tzinfo). If already naive, assume UTC and return as-is.
    Returns None if input is None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # assume naive datetimes are already UTC
        return dt
    # convert to UTC and drop tzinfo
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def elapsed_seconds(since: datetime, now: datetime) -> int:
    """Whole seconds from ``since`` to ``now``; a clock running backwards counts as 0."""
    seconds = math.floor((to_naive_utc(now) - to_naive_utc(since)).total_seconds())
    return max(0, seconds)


def remaining_seconds(config, last_activity_at: datetime, stored_remaining: int | None,
                      now: datetime, paused_seconds: int = 0) -> int:
    """
    Time left on the attempt at ``now``.

    ``paused_seconds`` is offline time covered by the grace budget; the timer
    does not run during it. If more time passed since the last checkpoint than
    the whole exam lasts, the checkpoint is treated as stale and the stored
    value is returned unchanged.
    """
    if stored_remaining is None:
        stored_remaining = config.duration_seconds
    elapsed = elapsed_seconds(last_activity_at, now)
    if elapsed > config.duration_seconds:
        return stored_remaining
    counted = max(0, elapsed - max(0, paused_seconds))
    return max(0, stored_remaining - counted)


def time_spent_seconds(config, started_at: datetime, now: datetime) -> int:
    return min(elapsed_seconds(started_at, now), config.duration_seconds)


def submit_window_closed(config, started_at: datetime, now: datetime, grace_seconds: int) -> bool:
    """True when a client submit arrives later than duration + grace after the start."""
    return elapsed_seconds(started_at, now) > config.duration_seconds + grace_seconds
