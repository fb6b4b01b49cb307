"""
COGS Applicability Resolver

Decides which cost basis, if any, applies to a reporting week.

Features:
- Week midpoint (Thursday) interval matching
- Deterministic tie-break for overlapping records
- Future vs absent classification
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from margin_engine.core.models import ApplicableCogs, CogsRecord
from margin_engine.core.weeks import IsoWeek, WeekLike


class CogsApplicability(str, Enum):
    """Resolver outcome"""
    APPLICABLE = "applicable"
    FUTURE = "future"  # A cost basis exists but only starts after the week
    ABSENT = "absent"


@dataclass(frozen=True)
class CogsResolution:
    """Resolver output; ``record`` is None only for ABSENT"""
    status: CogsApplicability
    week: IsoWeek
    record: Optional[CogsRecord] = None

    @property
    def is_applicable(self) -> bool:
        return self.status == CogsApplicability.APPLICABLE

    @property
    def is_missing(self) -> bool:
        """Future and absent both mean no cost basis for the week"""
        return self.status != CogsApplicability.APPLICABLE


def _order_key(record: CogsRecord) -> Tuple:
    # Total order over records; an open-ended window sorts as the latest valid_to
    valid_to = record.valid_to or date.max
    return (record.valid_from, valid_to, record.record_id or "", record.unit_cost)


def latest_record(records: Iterable[CogsRecord]) -> Optional[CogsRecord]:
    """Most recently assigned record regardless of the week"""
    records = list(records)
    if not records:
        return None
    return max(records, key=_order_key)


def resolve_cogs(
    records: Union[CogsRecord, Iterable[CogsRecord], None],
    week: WeekLike,
) -> CogsResolution:
    """
    Resolve the cost basis for a week.

    Args:
        records: A single COGS record, a collection of them, or None
        week: Target ISO week

    Returns:
        CogsResolution: APPLICABLE with the winning record, FUTURE with the
        nearest future record, or ABSENT
    """
    target = IsoWeek.coerce(week)

    if records is None:
        candidates: List[CogsRecord] = []
    elif isinstance(records, CogsRecord):
        candidates = [records]
    else:
        candidates = list(records)

    midpoint = target.midpoint

    applicable = [r for r in candidates if r.covers(midpoint)]
    if applicable:
        return CogsResolution(
            status=CogsApplicability.APPLICABLE,
            week=target,
            record=max(applicable, key=_order_key),
        )

    future = [r for r in candidates if r.valid_from > midpoint]
    if future:
        return CogsResolution(
            status=CogsApplicability.FUTURE,
            week=target,
            record=min(future, key=_order_key),
        )

    return CogsResolution(status=CogsApplicability.ABSENT, week=target)


def is_cogs_after_week(valid_from: date, week: WeekLike) -> bool:
    """True if a cost basis effective on ``valid_from`` misses the week's midpoint"""
    return valid_from > IsoWeek.coerce(week).midpoint


def applicable_cogs_view(
    resolution: CogsResolution,
    records: Iterable[CogsRecord],
) -> Optional[ApplicableCogs]:
    """
    Describe the record used for the week's margin.

    ``is_same_as_current`` tells whether it is also the latest-assigned record;
    when it is not, the newest cost basis only starts in a later week.
    """
    if not resolution.is_applicable or resolution.record is None:
        return None

    current = latest_record(records)
    record = resolution.record
    return ApplicableCogs(
        unit_cost=record.unit_cost,
        valid_from=record.valid_from,
        applies_to_week=resolution.week,
        is_same_as_current=current == record,
    )
