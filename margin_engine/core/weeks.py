"""
ISO Week Arithmetic

Reporting granularity for margin analytics is the ISO-8601 week
(``YYYY-Www``). COGS validity windows are compared against the week
midpoint (Thursday): a cost basis effective on or before Thursday applies
to the whole week, one effective later only applies from the next week.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Union, overload

ISO_WEEK_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")

WeekLike = Union["IsoWeek", str]


@dataclass(frozen=True, order=True)
class IsoWeek:
    """An ISO-8601 calendar week, ordered by year then week number"""
    year: int
    week: int

    def __post_init__(self) -> None:
        # fromisocalendar rejects W53 in 52-week years
        try:
            date.fromisocalendar(self.year, self.week, 1)
        except ValueError as e:
            raise ValueError(f"Invalid ISO week: {self.year}-W{self.week:02d}") from e

    @classmethod
    def parse(cls, value: str) -> "IsoWeek":
        """
        Parse a ``YYYY-Www`` string.

        Raises:
            ValueError: if the string is not a valid ISO week
        """
        match = ISO_WEEK_PATTERN.match(value.strip())
        if not match:
            raise ValueError(f"Invalid ISO week format: {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def coerce(cls, value: WeekLike) -> "IsoWeek":
        """Accept either an IsoWeek or its string form"""
        if isinstance(value, IsoWeek):
            return value
        return cls.parse(value)

    @classmethod
    def from_date(cls, value: Union[date, datetime]) -> "IsoWeek":
        """ISO week containing the given calendar date"""
        if isinstance(value, datetime):
            value = value.date()
        year, week, _ = value.isocalendar()
        return cls(year, week)

    @property
    def monday(self) -> date:
        return date.fromisocalendar(self.year, self.week, 1)

    @property
    def midpoint(self) -> date:
        """Thursday of the week, used for COGS temporal lookup"""
        return date.fromisocalendar(self.year, self.week, 4)

    @property
    def sunday(self) -> date:
        return date.fromisocalendar(self.year, self.week, 7)

    def shift(self, weeks: int) -> "IsoWeek":
        """Week ``weeks`` after this one (negative for earlier weeks)"""
        return IsoWeek.from_date(self.monday + timedelta(weeks=weeks))

    def weeks_since(self, other: "IsoWeek") -> int:
        """Integer week distance ``self - other``"""
        return (self.monday - other.monday).days // 7

    @overload
    def __sub__(self, other: "IsoWeek") -> int: ...

    @overload
    def __sub__(self, other: int) -> "IsoWeek": ...

    def __sub__(self, other):
        if isinstance(other, IsoWeek):
            return self.weeks_since(other)
        if isinstance(other, int):
            return self.shift(-other)
        return NotImplemented

    def __add__(self, other: int) -> "IsoWeek":
        if isinstance(other, int):
            return self.shift(other)
        return NotImplemented

    def __str__(self) -> str:
        return f"{self.year}-W{self.week:02d}"
