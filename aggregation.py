from dataclasses import dataclass
from datetime import date
from typing import Optional

from domain import EntryType, Ledger, MonthlyBalance
from periods import MonthRef, iter_months


@dataclass(frozen=True)
class DailyTotals:
    day: date
    income_cents: int
    expense_cents: int
    balance_cents: Optional[int]
    has_skipped: bool
    entry_count: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass(frozen=True)
class MonthlySummary:
    month: MonthRef
    starting_cents: int
    ending_cents: int
    income_cents: int
    expense_cents: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


class BalanceCalculator:
    """Per-day totals and month balances for one ledger.

    Results are memoized until the ledger's revision moves.
    """

    def __init__(self, ledger: Ledger) -> None:
        self.ledger = ledger
        self._revision: Optional[int] = None
        self._daily: dict[date, DailyTotals] = {}
        self._balances: dict[str, MonthlyBalance] = {}
        self._range: Optional[tuple[MonthRef, MonthRef]] = None

    def _sync(self) -> None:
        if self._revision != self.ledger.revision:
            self._daily.clear()
            self._balances = {}
            self._range = None
            self._revision = self.ledger.revision

    def daily_totals(self, day: date) -> DailyTotals:
        self._sync()
        cached = self._daily.get(day)
        if cached is not None:
            return cached
        income = expense = 0
        balance = None
        has_skipped = False
        items = self.ledger.entries.get(day, [])
        for item in items:
            if self.ledger.is_skipped(day, item.recurring_id):
                has_skipped = True
                continue
            if item.entry_type == EntryType.balance:
                balance = item.amount_cents
            elif item.entry_type == EntryType.income:
                income += item.amount_cents
            else:
                expense += item.amount_cents
        totals = DailyTotals(day, income, expense, balance, has_skipped, len(items))
        self._daily[day] = totals
        return totals

    def _apply_day(self, running: int, day: date) -> int:
        # the day's balance entry resets first, whatever its list position
        totals = self.daily_totals(day)
        if totals.balance_cents is not None:
            running = totals.balance_cents
        return running + totals.net_cents

    def _opening_override(self, month: MonthRef) -> Optional[int]:
        for item in self.ledger.entries.get(month.first_day, []):
            if item.entry_type == EntryType.balance:
                return item.amount_cents
        return None

    def recompute_monthly_balances(
        self, anchor: Optional[date] = None
    ) -> dict[str, MonthlyBalance]:
        self._sync()
        dates = self.ledger.dates()
        bounds = [MonthRef.of(day) for day in (dates[0], dates[-1])] if dates else []
        if anchor is not None:
            bounds.append(MonthRef.of(anchor))
        if not bounds:
            self._balances = {}
            self._range = None
            return {}
        first, last = min(bounds), max(bounds).next()

        balances: dict[str, MonthlyBalance] = {}
        running = 0
        for month in iter_months(first, last):
            override = self._opening_override(month)
            starting = override if override is not None else running
            running = starting
            for day in self.ledger.dates_in(month):
                running = self._apply_day(running, day)
            balances[month.key] = MonthlyBalance(starting_cents=starting, ending_cents=running)
        self._balances = balances
        self._range = (first, last)
        return dict(balances)

    def monthly_balance(self, month: MonthRef) -> MonthlyBalance:
        self._sync()
        if self._range is None or not self._range[0] <= month <= self._range[1]:
            self.recompute_monthly_balances(anchor=month.first_day)
        cached = self._balances.get(month.key)
        if cached is not None:
            return cached
        return MonthlyBalance(starting_cents=0, ending_cents=0)

    def day_balances(self, month: MonthRef) -> dict[date, int]:
        """End-of-day running balance for every day of the month."""
        running = self.monthly_balance(month).starting_cents
        result: dict[date, int] = {}
        for day in month.days():
            running = self._apply_day(running, day)
            result[day] = running
        return result

    def monthly_summary(self, year: int, month: int) -> MonthlySummary:
        ref = MonthRef(year, month)
        balance = self.monthly_balance(ref)
        income = expense = 0
        for day in self.ledger.dates_in(ref):
            totals = self.daily_totals(day)
            income += totals.income_cents
            expense += totals.expense_cents
        return MonthlySummary(
            month=ref,
            starting_cents=balance.starting_cents,
            ending_cents=balance.ending_cents,
            income_cents=income,
            expense_cents=expense,
        )
