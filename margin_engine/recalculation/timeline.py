"""
Recalculation Timeline Helpers

Which weeks a COGS change affects, which week is the last completed
reporting week, and how aggressively to poll while the backend recomputes.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from margin_engine.core.weeks import IsoWeek

SECONDS_PER_WEEK_ESTIMATE = 5
MIN_ESTIMATE_SECONDS = 5
MAX_ESTIMATE_SECONDS = 60


@dataclass(frozen=True)
class PollingStrategy:
    """Polling cadence for one recalculation"""
    interval_seconds: float
    max_attempts: int
    estimated_seconds: float


def last_completed_week(now: datetime, tz: Optional[str] = None) -> IsoWeek:
    """
    Last week whose weekly report is expected to be ready.

    Reports form at week end, so on Monday, and on Tuesday before noon, the
    previous week is not ready yet and the week before it is used.

    Args:
        now: Current instant; naive values are taken as already local
        tz: Reporting timezone name (e.g. "Europe/Moscow")
    """
    if tz and now.tzinfo is not None:
        now = now.astimezone(ZoneInfo(tz))

    weekday = now.isoweekday()  # Monday = 1
    if weekday == 1 or (weekday == 2 and now.hour < 12):
        return IsoWeek.from_date(now.date() - timedelta(days=14))
    return IsoWeek.from_date(now.date() - timedelta(days=7))


def affected_weeks(valid_from: date, last_completed: IsoWeek) -> List[IsoWeek]:
    """
    Weeks from the one containing ``valid_from`` up to the last completed week.

    Empty when the cost basis starts after the last completed week ends.
    """
    if valid_from > last_completed.sunday:
        return []

    weeks = []
    current = IsoWeek.from_date(valid_from)
    while current <= last_completed:
        weeks.append(current)
        current = current.shift(1)
    return weeks


def estimate_calculation_seconds(weeks: List[IsoWeek]) -> int:
    """Roughly five seconds per week, clamped to [5, 60]"""
    total = len(weeks) * SECONDS_PER_WEEK_ESTIMATE
    return max(MIN_ESTIMATE_SECONDS, min(MAX_ESTIMATE_SECONDS, total))


def polling_strategy(weeks: List[IsoWeek], is_bulk: bool = False) -> PollingStrategy:
    """
    Pick a polling cadence.

    - Bulk upload: 5s interval, 20 attempts
    - Historical (several weeks): 5s interval, 10 attempts
    - Single current week: 3s interval, 10 attempts
    """
    if is_bulk:
        return PollingStrategy(interval_seconds=5, max_attempts=20, estimated_seconds=60)

    if len(weeks) > 1:
        return PollingStrategy(
            interval_seconds=5,
            max_attempts=10,
            estimated_seconds=estimate_calculation_seconds(weeks),
        )

    return PollingStrategy(interval_seconds=3, max_attempts=10, estimated_seconds=10)
