"""
Calendar month arithmetic for bucket keys and measurement windows.

Buckets are keyed by ``YYYY-MM``. Both measurement windows are expressed as
lists of month keys so a single batched read can serve them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, List, Union

ROLLING_WINDOW_MONTHS = 12


@dataclass(frozen=True, order=True)
class YearMonth:
    """A calendar month."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month out of range: {self.month}")
        if not 1 <= self.year <= 9999:
            raise ValueError(f"Year out of range: {self.year}")

    @classmethod
    def parse(cls, value: str) -> "YearMonth":
        """Parse a ``YYYY-MM`` key."""
        try:
            year_str, month_str = value.split("-")
            if len(year_str) != 4 or len(month_str) != 2:
                raise ValueError
            return cls(int(year_str), int(month_str))
        except ValueError:
            raise ValueError(f"Invalid period, expected YYYY-MM: {value!r}") from None

    @classmethod
    def from_date(cls, value: Union[date, datetime]) -> "YearMonth":
        return cls(value.year, value.month)

    @classmethod
    def coerce(cls, value: Union["YearMonth", str, date, datetime]) -> "YearMonth":
        if isinstance(value, YearMonth):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        return cls.from_date(value)

    def shift(self, months: int) -> "YearMonth":
        index = self.year * 12 + (self.month - 1) + months
        return YearMonth(index // 12, index % 12 + 1)

    def next(self) -> "YearMonth":
        return self.shift(1)

    @property
    def start(self) -> datetime:
        """First instant of the month."""
        return datetime(self.year, self.month, 1)

    @property
    def end(self) -> datetime:
        """First instant of the following month (exclusive bound)."""
        return self.next().start

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def __str__(self) -> str:
        return self.key


def iter_months(start: YearMonth, end: YearMonth) -> Iterator[YearMonth]:
    """Yield every month from ``start`` through ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current = current.next()


def month_range(start: YearMonth, end: YearMonth) -> List[YearMonth]:
    return list(iter_months(start, end))


def rolling_window(as_of: Union[date, datetime], months: int = ROLLING_WINDOW_MONTHS) -> List[YearMonth]:
    """
    Month keys of the trailing window ending in the month of ``as_of``.

    The current month counts as the last of the ``months`` buckets.
    """
    current = YearMonth.from_date(as_of)
    return month_range(current.shift(-(months - 1)), current)


def calendar_year_window(as_of: Union[date, datetime]) -> List[YearMonth]:
    """Month keys from January of the current year through the current month."""
    current = YearMonth.from_date(as_of)
    return month_range(YearMonth(current.year, 1), current)
