"""
Managed Wealth - Age-thresholded scans.

Shared by the allocation monitor (RUNNING but never bound to an
execution account) and the health reporter (liquidation backlog).
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from core.clock import ensure_utc

from .types import StaleRecord

T = TypeVar("T")


def age_minutes(since: datetime, now: datetime) -> float:
    return max(0.0, (ensure_utc(now) - ensure_utc(since)).total_seconds() / 60.0)


def flag_stale(
    records: Iterable[T],
    predicate: Callable[[T], bool],
    threshold_minutes: float,
    now: datetime,
    age_from: Callable[[T], Optional[datetime]],
    record_id: Callable[[T], str] = lambda r: r.id,
    details: Optional[Callable[[T], Dict[str, Any]]] = None,
) -> List[StaleRecord]:
    """
    Records that match ``predicate`` and are at least ``threshold_minutes`` old.

    Age is measured from ``age_from(record)``; records without a
    timestamp are skipped. Result is oldest first.
    """
    flagged = []
    for record in records:
        if not predicate(record):
            continue
        since = age_from(record)
        if since is None:
            continue
        age = age_minutes(since, now)
        if age < threshold_minutes:
            continue
        flagged.append(
            StaleRecord(
                record_id=record_id(record),
                age_minutes=round(age, 2),
                since=ensure_utc(since),
                details=details(record) if details else {},
            )
        )
    flagged.sort(key=lambda r: r.age_minutes, reverse=True)
    return flagged
