from dataclasses import dataclass
from datetime import date
from typing import Optional


def month_key(year: int, month: int) -> int:
    return year * 12 + month


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


@dataclass(frozen=True)
class MonthPeriod:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError("Month must be between 1 and 12")

    @classmethod
    def containing(cls, day: date) -> "MonthPeriod":
        return cls(day.year, day.month)

    @property
    def key(self) -> int:
        return month_key(self.year, self.month)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def next_start(self) -> date:
        if self.month == 12:
            return date(self.year + 1, 1, 1)
        return date(self.year, self.month + 1, 1)


def resolve_month(
    month: Optional[int],
    year: Optional[int],
    *,
    today: Optional[date] = None,
) -> MonthPeriod:
    today = today or date.today()
    if month is None and year is None:
        return MonthPeriod.containing(today)
    if month is None or year is None:
        raise ValueError("Month and year must be given together")
    return MonthPeriod(year, month)
