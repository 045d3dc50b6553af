"""Plain in-memory records shared by the calendar core.

The persistence layer converts its rows into these records, hands a
``Workspace`` to the core and writes the result back. Nothing in here touches
the database.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterator, Optional, Union

from periods import MonthRef


class EntryType(str, Enum):
    income = "income"
    expense = "expense"
    balance = "balance"


class RecurrenceKind(str, Enum):
    once = "once"
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    semimonthly = "semimonthly"
    quarterly = "quarterly"
    semiannual = "semiannual"
    yearly = "yearly"
    custom = "custom"


class IntervalUnit(str, Enum):
    days = "days"
    weeks = "weeks"
    months = "months"


class BusinessDayAdjustment(str, Enum):
    none = "none"
    previous = "previous"
    next = "next"
    nearest = "nearest"


class DebtRole(str, Enum):
    minimum = "minimum"
    snowball = "snowball"


class EditScope(str, Enum):
    this = "this"
    future = "future"
    all = "all"


# Semi-monthly day value meaning "the last day of whatever month this is".
LAST_DAY_OF_MONTH = 31
DEFAULT_SEMI_MONTHLY_DAYS = (1, 15)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class DayPattern:
    # ordinal 1..4 counts from the start of the month, -1 is the last one;
    # weekday uses 0 = Sunday .. 6 = Saturday.
    ordinal: int
    weekday: int


@dataclass(frozen=True)
class CustomInterval:
    value: int
    unit: IntervalUnit


@dataclass
class Schedule:
    """Recurrence description without amount or identity (used by debts)."""

    kind: Union[RecurrenceKind, str]
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    day_pattern: Optional[DayPattern] = None
    semi_monthly_days: Optional[tuple[int, int]] = None
    custom_interval: Optional[CustomInterval] = None
    business_day_adjustment: BusinessDayAdjustment = BusinessDayAdjustment.none


@dataclass
class RecurringTemplate:
    id: str
    start_date: date
    kind: Union[RecurrenceKind, str]
    amount_cents: int
    entry_type: EntryType
    description: str = ""
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    day_pattern: Optional[DayPattern] = None
    semi_monthly_days: Optional[tuple[int, int]] = None
    custom_interval: Optional[CustomInterval] = None
    business_day_adjustment: BusinessDayAdjustment = BusinessDayAdjustment.none
    variable_percentage: Optional[float] = None
    # month-stepped schedules aim for this day when set; 31 means month end
    anchor_day: Optional[int] = None
    debt_id: Optional[str] = None
    debt_role: Optional[DebtRole] = None

    @property
    def is_debt_minimum(self) -> bool:
        return self.debt_id is not None and self.debt_role == DebtRole.minimum


@dataclass
class TransactionInstance:
    amount_cents: int
    entry_type: EntryType
    description: str = ""
    recurring_id: Optional[str] = None
    modified_instance: bool = False
    original_date: Optional[date] = None
    debt_id: Optional[str] = None
    debt_role: Optional[DebtRole] = None
    snowball_month: Optional[str] = None
    projected: bool = False

    @property
    def is_recurring(self) -> bool:
        return self.recurring_id is not None

    @property
    def is_generated(self) -> bool:
        return self.recurring_id is not None and not self.modified_instance


@dataclass
class Debt:
    id: str
    name: str
    balance_cents: int
    min_payment_cents: int
    interest_rate: float = 0.0
    due_day: int = 1
    start_date: Optional[date] = None
    schedule: Optional[Schedule] = None
    min_template_id: Optional[str] = None
    # Last day of the month the projection paid the debt off in; ends the
    # derived minimum-payment template.
    payoff_date: Optional[date] = None


@dataclass
class CashInfusion:
    id: str
    name: str
    amount_cents: int
    date: date
    target_debt_id: Optional[str] = None


@dataclass
class SnowballSettings:
    base_extra_cents: int = 0
    auto_generate: bool = False


@dataclass(frozen=True)
class MonthlyBalance:
    starting_cents: int
    ending_cents: int


class Ledger:
    """Date keyed transaction instances plus the skip flags that hide them.

    Every mutation bumps ``revision`` so derived caches can tell whether they
    are stale.
    """

    def __init__(
        self,
        entries: Optional[dict[date, list[TransactionInstance]]] = None,
        skips: Optional[dict[date, set[str]]] = None,
    ) -> None:
        self.entries: dict[date, list[TransactionInstance]] = entries or {}
        self.skips: dict[date, set[str]] = skips or {}
        self.revision = 0

    def touch(self) -> None:
        self.revision += 1

    def instances(self, day: date) -> list[TransactionInstance]:
        return list(self.entries.get(day, []))

    def append(self, day: date, instance: TransactionInstance) -> None:
        self.entries.setdefault(day, []).append(instance)
        self.touch()

    def remove(self, day: date, instance: TransactionInstance) -> None:
        items = self.entries.get(day)
        if not items:
            return
        remaining = [item for item in items if item is not instance]
        if len(remaining) == len(items):
            return
        self._store_day(day, remaining)
        self.touch()

    def retain(self, day: date, keep) -> int:
        items = self.entries.get(day)
        if not items:
            return 0
        remaining = [item for item in items if keep(item)]
        removed = len(items) - len(remaining)
        if removed:
            self._store_day(day, remaining)
            self.touch()
        return removed

    def _store_day(self, day: date, items: list[TransactionInstance]) -> None:
        if items:
            self.entries[day] = items
        else:
            self.entries.pop(day, None)

    def get(self, day: date, index: int) -> TransactionInstance:
        items = self.entries.get(day, [])
        if index < 0 or index >= len(items):
            raise ValueError("Transaction not found")
        return items[index]

    def find(
        self,
        day: date,
        recurring_id: str,
        *,
        modified: Optional[bool] = None,
    ) -> Optional[TransactionInstance]:
        for item in self.entries.get(day, []):
            if item.recurring_id != recurring_id:
                continue
            if modified is None or item.modified_instance == modified:
                return item
        return None

    def dates(self) -> list[date]:
        return sorted(self.entries)

    def dates_in(self, month: MonthRef) -> list[date]:
        return sorted(day for day in self.entries if month.contains(day))

    def iter_items(self) -> Iterator[tuple[date, TransactionInstance]]:
        for day in self.dates():
            for item in self.entries[day]:
                yield day, item

    def is_skipped(self, day: date, recurring_id: Optional[str]) -> bool:
        if not recurring_id:
            return False
        return recurring_id in self.skips.get(day, set())

    def set_skipped(self, day: date, recurring_id: str, skipped: bool) -> None:
        flags = self.skips.setdefault(day, set())
        if skipped:
            flags.add(recurring_id)
        else:
            flags.discard(recurring_id)
        if not flags:
            self.skips.pop(day, None)
        self.touch()

    def clear_skips(self, recurring_id: str, *, on_or_after: Optional[date] = None) -> int:
        cleared = 0
        for day in list(self.skips):
            if on_or_after is not None and day < on_or_after:
                continue
            if recurring_id in self.skips[day]:
                self.skips[day].discard(recurring_id)
                cleared += 1
                if not self.skips[day]:
                    del self.skips[day]
        if cleared:
            self.touch()
        return cleared

    def copy(self) -> "Ledger":
        return Ledger(copy.deepcopy(self.entries), copy.deepcopy(self.skips))


@dataclass
class Workspace:
    ledger: Ledger = field(default_factory=Ledger)
    templates: list[RecurringTemplate] = field(default_factory=list)
    debts: list[Debt] = field(default_factory=list)
    infusions: list[CashInfusion] = field(default_factory=list)
    settings: SnowballSettings = field(default_factory=SnowballSettings)
    monthly_balances: dict[str, MonthlyBalance] = field(default_factory=dict)

    def template(self, template_id: str) -> RecurringTemplate:
        for template in self.templates:
            if template.id == template_id:
                return template
        raise ValueError("Recurring template not found")

    def find_template(self, template_id: Optional[str]) -> Optional[RecurringTemplate]:
        if not template_id:
            return None
        return next((t for t in self.templates if t.id == template_id), None)

    def debt(self, debt_id: str) -> Debt:
        for debt in self.debts:
            if debt.id == debt_id:
                return debt
        raise ValueError("Debt not found")

    def snapshot(self) -> "Workspace":
        """Isolated copy for what-if projections."""
        return Workspace(
            ledger=self.ledger.copy(),
            templates=copy.deepcopy(self.templates),
            debts=copy.deepcopy(self.debts),
            infusions=copy.deepcopy(self.infusions),
            settings=copy.deepcopy(self.settings),
            monthly_balances=dict(self.monthly_balances),
        )
