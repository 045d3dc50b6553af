from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def is_last_day_of_month(value: date) -> bool:
    return value.day == days_in_month(value.year, value.month)


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole months, clamping the day to the target month."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, min(day, days_in_month(year, month)))


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


@dataclass(frozen=True, order=True)
class MonthRef:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def of(cls, value: date) -> "MonthRef":
        return cls(value.year, value.month)

    @classmethod
    def parse_key(cls, key: str) -> "MonthRef":
        year_text, _, month_text = key.partition("-")
        return cls(int(year_text), int(month_text))

    @property
    def key(self) -> str:
        return f"{self.year}-{self.month}"

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, days_in_month(self.year, self.month))

    @property
    def length(self) -> int:
        return days_in_month(self.year, self.month)

    def contains(self, value: date) -> bool:
        return value.year == self.year and value.month == self.month

    def shift(self, months: int) -> "MonthRef":
        index = self.year * 12 + (self.month - 1) + months
        return MonthRef(index // 12, index % 12 + 1)

    def next(self) -> "MonthRef":
        return self.shift(1)

    def prev(self) -> "MonthRef":
        return self.shift(-1)

    def days(self) -> Iterator[date]:
        for day in range(1, self.length + 1):
            yield date(self.year, self.month, day)


def iter_months(first: MonthRef, last: MonthRef) -> Iterator[MonthRef]:
    current = first
    while current <= last:
        yield current
        current = current.next()


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def months(self) -> list[MonthRef]:
        return list(iter_months(MonthRef.of(self.start), MonthRef.of(self.end)))


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    current = MonthRef.of(today)
    if period == "last_month":
        previous = current.prev()
        return Period("last_month", previous.first_day, previous.last_day)
    if period == "next_month":
        following = current.next()
        return Period("next_month", following.first_day, following.last_day)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "this_month":
        raise ValueError(f"Unknown period: {period}")
    return Period("this_month", current.first_day, current.last_day)
