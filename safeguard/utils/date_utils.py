from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def is_late_night(hour: int, *, start: int = 22, end: int = 6) -> bool:
    """True for hours in the overnight window [start, 24) ∪ [0, end]."""
    return hour >= start or hour <= end


def add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 Feb -> 28 Feb
        return moment.replace(year=moment.year + years, day=28)


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (as_utc(end) - as_utc(start)).total_seconds()


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def hours_ago(hours: float) -> datetime:
    return utcnow() - timedelta(hours=hours)
