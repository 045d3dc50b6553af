import logging
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, DecimalException
from typing import Iterable, Iterator, Optional

from domain import (
    DEFAULT_SEMI_MONTHLY_DAYS,
    LAST_DAY_OF_MONTH,
    BusinessDayAdjustment,
    IntervalUnit,
    RecurrenceKind,
    RecurringTemplate,
)
from periods import MonthRef, add_months, days_in_month, is_last_day_of_month, months_between

logger = logging.getLogger(__name__)

# Weekends never span more than two days, so three days of slack on each side
# of a month catches every occurrence that adjusts into it.
ADJUSTMENT_SLACK_DAYS = 3
NEAREST_SEARCH_DAYS = 3

_MONTH_STEPS = {
    RecurrenceKind.monthly: 1,
    RecurrenceKind.quarterly: 3,
    RecurrenceKind.semiannual: 6,
    RecurrenceKind.yearly: 12,
}
_DAY_STEPS = {
    RecurrenceKind.daily: 1,
    RecurrenceKind.weekly: 7,
    RecurrenceKind.biweekly: 14,
}


class InvalidTemplate(ValueError):
    pass


@dataclass(frozen=True)
class Occurrence:
    date: date
    amount_cents: int
    index: int
    original_date: Optional[date] = None

    @property
    def natural_date(self) -> date:
        return self.original_date or self.date


@dataclass(frozen=True)
class TemplateIssue:
    template_id: str
    message: str


@dataclass
class MonthExpansion:
    month: MonthRef
    occurrences: dict[str, list[Occurrence]] = field(default_factory=dict)
    issues: list[TemplateIssue] = field(default_factory=list)

    def all(self) -> list[tuple[str, Occurrence]]:
        return [
            (template_id, occurrence)
            for template_id, items in self.occurrences.items()
            for occurrence in items
        ]


def sunday_first_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def nth_weekday_of_month(year: int, month: int, weekday: int, ordinal: int) -> Optional[date]:
    """Resolve "the n-th <weekday>" in a month; weekday 0 is Sunday.

    Positive ordinals count from the first of the month, -1 is the last such
    weekday and other negatives count back from it. None when the requested
    date falls outside the month.
    """
    if not 0 <= weekday <= 6 or ordinal == 0:
        return None
    last = days_in_month(year, month)
    if ordinal > 0:
        offset = (weekday - sunday_first_weekday(date(year, month, 1))) % 7
        day = 1 + offset + (ordinal - 1) * 7
    else:
        offset = (sunday_first_weekday(date(year, month, last)) - weekday) % 7
        day = last - offset - (-ordinal - 1) * 7
    if 1 <= day <= last:
        return date(year, month, day)
    return None


def is_business_day(value: date) -> bool:
    return value.weekday() < 5


def adjust_for_business_day(
    value: date, mode: Optional[BusinessDayAdjustment]
) -> tuple[date, bool]:
    """Move ``value`` onto a business day; returns the date and whether it moved."""
    if not mode or mode == BusinessDayAdjustment.none or is_business_day(value):
        return value, False
    if mode == BusinessDayAdjustment.previous:
        adjusted = value
        while not is_business_day(adjusted):
            adjusted -= timedelta(days=1)
        return adjusted, True
    if mode == BusinessDayAdjustment.next:
        adjusted = value
        while not is_business_day(adjusted):
            adjusted += timedelta(days=1)
        return adjusted, True
    if mode == BusinessDayAdjustment.nearest:
        for offset in range(1, NEAREST_SEARCH_DAYS + 1):
            before = value - timedelta(days=offset)
            if is_business_day(before):
                return before, True
            after = value + timedelta(days=offset)
            if is_business_day(after):
                return after, True
        return value, False
    raise InvalidTemplate(f"Unknown business day adjustment: {mode}")


def template_kind(template: RecurringTemplate) -> RecurrenceKind:
    try:
        return RecurrenceKind(template.kind)
    except ValueError as exc:
        raise InvalidTemplate(f"Unknown recurrence kind: {template.kind}") from exc


def _adjustment_mode(template: RecurringTemplate) -> BusinessDayAdjustment:
    try:
        return BusinessDayAdjustment(template.business_day_adjustment or "none")
    except ValueError as exc:
        raise InvalidTemplate(
            f"Unknown business day adjustment: {template.business_day_adjustment}"
        ) from exc


def _semi_monthly_days(template: RecurringTemplate) -> tuple[int, int]:
    days = template.semi_monthly_days or DEFAULT_SEMI_MONTHLY_DAYS
    if len(days) != 2 or any(not 1 <= day <= LAST_DAY_OF_MONTH for day in days):
        raise InvalidTemplate(f"Invalid semi-monthly days: {days}")
    return days[0], days[1]


def month_anchor_day(template: RecurringTemplate) -> Optional[int]:
    """Day of month a month-stepped schedule aims for before clamping.

    None for schedules that do not step by whole months.
    """
    kind = template_kind(template)
    if kind == RecurrenceKind.custom:
        interval = template.custom_interval
        if interval is None or interval.unit != IntervalUnit.months:
            return None
    elif kind not in _MONTH_STEPS or (
        kind == RecurrenceKind.monthly and template.day_pattern is not None
    ):
        return None
    if template.anchor_day:
        return template.anchor_day
    if kind == RecurrenceKind.monthly and is_last_day_of_month(template.start_date):
        return LAST_DAY_OF_MONTH
    return template.start_date.day


def validate_template(template: RecurringTemplate) -> RecurrenceKind:
    kind = template_kind(template)
    _adjustment_mode(template)
    if kind == RecurrenceKind.custom:
        interval = template.custom_interval
        if interval is None:
            raise InvalidTemplate("Custom recurrence requires an interval")
        if interval.value < 1:
            raise InvalidTemplate("Custom interval must be at least 1")
        try:
            IntervalUnit(interval.unit)
        except ValueError as exc:
            raise InvalidTemplate(f"Unknown interval unit: {interval.unit}") from exc
    if kind == RecurrenceKind.monthly and template.day_pattern is not None:
        pattern = template.day_pattern
        if not 0 <= pattern.weekday <= 6 or pattern.ordinal == 0 or abs(pattern.ordinal) > 5:
            raise InvalidTemplate(
                f"Invalid day pattern: {pattern.ordinal}-{pattern.weekday}"
            )
    if kind == RecurrenceKind.semimonthly:
        _semi_monthly_days(template)
    if template.amount_cents < 0:
        raise InvalidTemplate("Amount must be non-negative")
    if template.anchor_day is not None and not 1 <= template.anchor_day <= LAST_DAY_OF_MONTH:
        raise InvalidTemplate(f"Invalid anchor day: {template.anchor_day}")
    pct = template.variable_percentage
    if pct is not None and not math.isfinite(pct):
        raise InvalidTemplate("Variable percentage must be a finite number")
    return kind


def _natural_dates(
    template: RecurringTemplate, kind: RecurrenceKind, window_start: date, window_end: date
) -> Iterator[tuple[int, date]]:
    """Yield (index, natural date) pairs inside the window, in date order."""
    start = template.start_date
    if window_end < start:
        return
    lower = max(window_start, start)

    if kind == RecurrenceKind.once:
        if lower <= start <= window_end:
            yield 0, start
        return

    step_days = _DAY_STEPS.get(kind)
    step_months = _MONTH_STEPS.get(kind)
    if kind == RecurrenceKind.custom:
        interval = template.custom_interval
        if interval.unit == IntervalUnit.days:
            step_days = interval.value
        elif interval.unit == IntervalUnit.weeks:
            step_days = interval.value * 7
        else:
            step_months = interval.value

    if kind == RecurrenceKind.semimonthly:
        yield from _semi_monthly_dates(template, lower, window_end)
        return

    if kind == RecurrenceKind.monthly and template.day_pattern is not None:
        pattern = template.day_pattern
        month = MonthRef.of(lower)
        while month.first_day <= window_end:
            resolved = nth_weekday_of_month(
                month.year, month.month, pattern.weekday, pattern.ordinal
            )
            if resolved is not None and lower <= resolved <= window_end:
                yield months_between(start, resolved), resolved
            month = month.next()
        return

    if step_days is not None:
        index = max(0, (lower - start).days // step_days)
        current = start + timedelta(days=index * step_days)
        while current <= window_end:
            if current >= lower:
                yield index, current
            index += 1
            current += timedelta(days=step_days)
        return

    desired_day = month_anchor_day(template)
    index = max(0, months_between(start, lower) // step_months - 1)
    while True:
        current = add_months(start, index * step_months, desired_day=desired_day)
        if current > window_end:
            return
        if current >= lower:
            yield index, current
        index += 1


def _semi_monthly_dates(
    template: RecurringTemplate, lower: date, window_end: date
) -> Iterator[tuple[int, date]]:
    start = template.start_date
    first_day, second_day = _semi_monthly_days(template)

    def paydates(month: MonthRef) -> list[date]:
        resolved = {date(month.year, month.month, min(day, month.length)) for day in (first_day, second_day)}
        return sorted(resolved)

    start_month = MonthRef.of(start)
    skipped = sum(1 for day in paydates(start_month) if day < start)
    month = MonthRef.of(lower)
    while month.first_day <= window_end:
        for slot, current in enumerate(paydates(month)):
            if current < start or current < lower or current > window_end:
                continue
            index = 2 * months_between(start, current) + slot - skipped
            yield index, current
        month = month.next()


def _amount_for_index(template: RecurringTemplate, index: int) -> int:
    pct = template.variable_percentage
    if not pct or index <= 0:
        return max(template.amount_cents, 0)
    if not math.isfinite(pct):
        raise InvalidTemplate("Variable percentage must be a finite number")
    try:
        factor = (Decimal(1) + Decimal(str(pct)) / Decimal(100)) ** index
        value = (Decimal(template.amount_cents) * factor).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    except DecimalException as exc:
        raise InvalidTemplate("Variable amount is not a finite number") from exc
    return max(int(value), 0)


def expand(
    template: RecurringTemplate,
    year: int,
    month: int,
    *,
    issues: Optional[list[TemplateIssue]] = None,
) -> list[Occurrence]:
    """Occurrences of ``template`` whose (adjusted) date falls in the month.

    An occurrence whose amount cannot be computed is left out and reported
    through ``issues``; the template's other occurrences are kept.
    """
    kind = validate_template(template)
    target = MonthRef(year, month)
    mode = _adjustment_mode(template)
    slack = timedelta(days=ADJUSTMENT_SLACK_DAYS if mode != BusinessDayAdjustment.none else 0)
    window_start = target.first_day - slack
    window_end = target.last_day + slack
    if template.end_date is not None:
        window_end = min(window_end, template.end_date)

    occurrences: list[Occurrence] = []
    for index, natural in _natural_dates(template, kind, window_start, window_end):
        if template.max_occurrences and index >= template.max_occurrences:
            break
        adjusted, moved = adjust_for_business_day(natural, mode)
        if not target.contains(adjusted):
            continue
        if template.end_date is not None and adjusted > template.end_date:
            continue
        try:
            amount = _amount_for_index(template, index)
        except InvalidTemplate as exc:
            logger.warning(
                f"occurrence_invalid: id={template.id} date={adjusted.isoformat()} error={exc}"
            )
            if issues is not None:
                issues.append(
                    TemplateIssue(
                        template_id=template.id,
                        message=f"{adjusted.isoformat()}: {exc}",
                    )
                )
            continue
        occurrences.append(
            Occurrence(
                date=adjusted,
                amount_cents=amount,
                index=index,
                original_date=natural if moved else None,
            )
        )
    occurrences.sort(key=lambda item: item.date)
    return occurrences


def count_occurrences_before(template: RecurringTemplate, before: date) -> int:
    """Natural occurrences dated strictly before ``before``."""
    kind = validate_template(template)
    last_index = -1
    for index, _ in _natural_dates(
        template, kind, template.start_date, before - timedelta(days=1)
    ):
        last_index = index
    return last_index + 1


def occurrence_amount(template: RecurringTemplate, natural_date: date) -> int:
    return _amount_for_index(template, count_occurrences_before(template, natural_date))


class RecurrenceEngine:
    def expand_month(
        self, templates: Iterable[RecurringTemplate], year: int, month: int
    ) -> MonthExpansion:
        result = MonthExpansion(month=MonthRef(year, month))
        for template in templates:
            try:
                occurrences = expand(template, year, month, issues=result.issues)
            except InvalidTemplate as exc:
                logger.warning(
                    f"template_invalid: id={template.id} month={result.month.key} error={exc}"
                )
                result.issues.append(TemplateIssue(template_id=template.id, message=str(exc)))
                continue
            if occurrences:
                result.occurrences[template.id] = occurrences
        return result
