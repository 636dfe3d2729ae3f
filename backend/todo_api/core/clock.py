"""UTC helpers shared by the services.

All timestamps are stored as UTC. Some backends (SQLite) hand them back
naive, so anything read from the database goes through ``as_utc`` before it
is compared with an aware ``now``.
"""

from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def seconds_until(hour: int, minute: int, now: datetime | None = None) -> float:
    """Seconds from ``now`` until the next UTC wall-clock hour:minute."""
    now = as_utc(now) or utcnow()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()
