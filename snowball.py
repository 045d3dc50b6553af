"""Debt snowball: month-by-month payoff simulation and the derived
minimum-payment templates that feed it."""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from config import get_settings
from domain import (
    CashInfusion,
    Debt,
    DebtRole,
    EntryType,
    Ledger,
    RecurrenceKind,
    RecurringTemplate,
    Schedule,
    SnowballSettings,
    Workspace,
)
from ledger import delete_template
from periods import MonthRef, add_months, local_today
from recurrence import InvalidTemplate, expand

logger = logging.getLogger(__name__)

LEGACY_SCHEDULE_ORIGIN = date(2000, 1, 1)


def minimum_template_id(debt: Debt) -> str:
    return debt.min_template_id or f"debt-min-{debt.id}"


def default_schedule(debt: Debt) -> Schedule:
    """Monthly on the due day, from the debt's start (or a fixed origin)."""
    due_day = min(max(debt.due_day or 1, 1), 31)
    anchor = debt.start_date or LEGACY_SCHEDULE_ORIGIN
    first = add_months(anchor.replace(day=1), 0, desired_day=due_day)
    if first < anchor:
        first = add_months(anchor.replace(day=1), 1, desired_day=due_day)
    return Schedule(kind=RecurrenceKind.monthly, start_date=first)


def minimum_payment_template(debt: Debt) -> RecurringTemplate:
    """Rebuild the debt's minimum-payment template from the debt alone."""
    schedule = debt.schedule or default_schedule(debt)
    end_date = schedule.end_date
    if debt.payoff_date is not None:
        end_date = min(end_date, debt.payoff_date) if end_date else debt.payoff_date
    return RecurringTemplate(
        id=minimum_template_id(debt),
        start_date=schedule.start_date,
        kind=schedule.kind,
        amount_cents=max(debt.min_payment_cents, 0),
        entry_type=EntryType.expense,
        description=f"Debt Payment: {debt.name}",
        end_date=end_date,
        max_occurrences=schedule.max_occurrences,
        day_pattern=schedule.day_pattern,
        semi_monthly_days=schedule.semi_monthly_days,
        custom_interval=schedule.custom_interval,
        business_day_adjustment=schedule.business_day_adjustment,
        debt_id=debt.id,
        debt_role=DebtRole.minimum,
    )


def sync_minimum_templates(workspace: Workspace, *, today: Optional[date] = None) -> bool:
    """Diff the stored minimum-payment templates against the debts."""
    changed = False
    wanted = {}
    for debt in workspace.debts:
        derived = minimum_payment_template(debt)
        debt.min_template_id = derived.id
        wanted[derived.id] = derived
        current = workspace.find_template(derived.id)
        if current is None:
            workspace.templates.append(derived)
            changed = True
        elif current != derived:
            workspace.templates[workspace.templates.index(current)] = derived
            changed = True
    for template in list(workspace.templates):
        if template.is_debt_minimum and template.id not in wanted:
            delete_template(
                workspace, template.id, today or local_today(), force=True
            )
            changed = True
    if changed:
        workspace.ledger.touch()
    return changed


@dataclass(frozen=True)
class DebtSummary:
    debt: Debt
    paid_cents: int
    remaining_cents: int


def debt_summaries(
    ledger: Ledger, debts: Iterable[Debt], cutoff: Optional[date] = None
) -> list[DebtSummary]:
    """Recorded payments per debt (expenses dated before ``cutoff``)."""
    debts = list(debts)
    paid = {debt.id: 0 for debt in debts}
    for day, item in ledger.iter_items():
        if cutoff is not None and day >= cutoff:
            continue
        if item.debt_id not in paid or item.entry_type != EntryType.expense:
            continue
        if ledger.is_skipped(day, item.recurring_id):
            continue
        paid[item.debt_id] += item.amount_cents
    return [
        DebtSummary(
            debt=debt,
            paid_cents=paid[debt.id],
            remaining_cents=max(0, debt.balance_cents - paid[debt.id]),
        )
        for debt in debts
    ]


@dataclass(frozen=True)
class PoolBreakdown:
    base_extra_cents: int = 0
    infusion_cents: int = 0
    targeted_remainder_cents: int = 0
    in_month_rollover_cents: int = 0
    matured_rollover_cents: int = 0

    @property
    def total_cents(self) -> int:
        return (
            self.base_extra_cents
            + self.infusion_cents
            + self.targeted_remainder_cents
            + self.in_month_rollover_cents
            + self.matured_rollover_cents
        )


@dataclass
class DebtMonth:
    debt_id: str
    starting_cents: int
    interest_cents: int = 0
    scheduled_minimum_cents: int = 0
    minimum_cents: int = 0
    infusion_cents: int = 0
    extra_cents: int = 0
    ending_cents: int = 0

    @property
    def total_paid_cents(self) -> int:
        return self.minimum_cents + self.infusion_cents + self.extra_cents


@dataclass
class ProjectionMonth:
    month: MonthRef
    target_debt_id: Optional[str]
    pool: PoolBreakdown
    debts: dict[str, DebtMonth]
    unused_pool_cents: int = 0

    @property
    def pool_cents(self) -> int:
        return self.pool.total_cents

    @property
    def balances(self) -> dict[str, int]:
        return {debt_id: row.ending_cents for debt_id, row in self.debts.items()}


@dataclass
class Projection:
    start: MonthRef
    include_extra: bool
    months: list[ProjectionMonth] = field(default_factory=list)
    payoff_months: dict[str, Optional[MonthRef]] = field(default_factory=dict)
    horizon_exceeded: bool = False
    issues: list[str] = field(default_factory=list)

    def month(self, ref: MonthRef) -> Optional[ProjectionMonth]:
        for row in self.months:
            if row.month == ref:
                return row
        return None


def monthly_interest(balance_cents: int, annual_rate: float) -> int:
    value = Decimal(balance_cents) * Decimal(str(annual_rate)) / Decimal(1200)
    return max(int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP)), 0)


def scheduled_minimum(debt: Debt, month: MonthRef) -> int:
    # the payoff cut-off only ends ledger postings; matured rollover still
    # needs the amount the debt would have asked for
    template = minimum_payment_template(replace(debt, payoff_date=None))
    occurrences = expand(template, month.year, month.month)
    return sum(item.amount_cents for item in occurrences)


def _ordered(debts: Iterable[Debt], balances: dict[str, int]) -> list[Debt]:
    return sorted(
        (debt for debt in debts if balances[debt.id] > 0),
        key=lambda debt: (balances[debt.id], debt.name, debt.id),
    )


def project_snowball(
    debts: Iterable[Debt],
    settings: SnowballSettings,
    infusions: Iterable[CashInfusion],
    year: int,
    month: int,
    include_extra: bool = True,
    *,
    balances: Optional[dict[str, int]] = None,
    horizon_months: Optional[int] = None,
) -> Projection:
    """Simulate payoff month by month starting at (year, month).

    ``balances`` overrides the opening balance per debt (e.g. the remaining
    amounts from ``debt_summaries``). Debts that open at zero count as paid off
    before the first simulated month.
    """
    debts = list(debts)
    infusions = list(infusions) if include_extra else []
    horizon = horizon_months or get_settings().snowball_horizon_months
    start = MonthRef(year, month)
    projection = Projection(start=start, include_extra=include_extra)

    current: dict[str, int] = {}
    for debt in debts:
        opening = balances.get(debt.id, debt.balance_cents) if balances else debt.balance_cents
        current[debt.id] = max(opening, 0)
        projection.payoff_months[debt.id] = None if current[debt.id] > 0 else start.prev()
    paid_before: set[str] = {debt.id for debt in debts if current[debt.id] == 0}
    bad_rates: set[str] = set()
    bad_schedules: set[str] = set()

    ref = start
    for _ in range(horizon):
        if not any(current[debt.id] > 0 for debt in debts):
            break
        rows = {
            debt.id: DebtMonth(debt_id=debt.id, starting_cents=current[debt.id])
            for debt in debts
        }

        scheduled: dict[str, int] = {}
        for debt in debts:
            try:
                scheduled[debt.id] = scheduled_minimum(debt, ref)
            except InvalidTemplate as exc:
                scheduled[debt.id] = 0
                if debt.id not in bad_schedules:
                    bad_schedules.add(debt.id)
                    projection.issues.append(f"debt {debt.id}: {exc}")
                    logger.warning(f"snowball_schedule_invalid: debt={debt.id} error={exc}")

        for debt in debts:
            if current[debt.id] <= 0:
                continue
            rate = debt.interest_rate or 0.0
            if not math.isfinite(rate):
                if debt.id not in bad_rates:
                    bad_rates.add(debt.id)
                    projection.issues.append(f"debt {debt.id}: interest rate is not finite")
                    logger.warning(f"snowball_rate_invalid: debt={debt.id}")
                continue
            interest = monthly_interest(current[debt.id], rate)
            rows[debt.id].interest_cents = interest
            current[debt.id] += interest

        in_month_rollover = 0
        paid_this_month: set[str] = set()
        for debt in debts:
            if current[debt.id] <= 0:
                continue
            due = scheduled[debt.id]
            applied = min(due, current[debt.id])
            current[debt.id] -= applied
            rows[debt.id].scheduled_minimum_cents = due
            rows[debt.id].minimum_cents = applied
            in_month_rollover += due - applied
            if current[debt.id] == 0:
                paid_this_month.add(debt.id)

        untargeted = 0
        targeted_remainder = 0
        for infusion in infusions:
            if not ref.contains(infusion.date) or infusion.amount_cents <= 0:
                continue
            target = infusion.target_debt_id
            if target is None:
                untargeted += infusion.amount_cents
                continue
            if current.get(target, 0) <= 0:
                targeted_remainder += infusion.amount_cents
                continue
            applied = min(infusion.amount_cents, current[target])
            current[target] -= applied
            rows[target].infusion_cents += applied
            targeted_remainder += infusion.amount_cents - applied
            if current[target] == 0:
                paid_this_month.add(target)

        matured = sum(scheduled[debt_id] for debt_id in paid_before)
        pool = PoolBreakdown(
            base_extra_cents=settings.base_extra_cents if include_extra else 0,
            infusion_cents=untargeted,
            targeted_remainder_cents=targeted_remainder,
            in_month_rollover_cents=in_month_rollover,
            matured_rollover_cents=matured,
        )

        ordered = _ordered(debts, current)
        target_id = ordered[0].id if ordered else None
        remaining_pool = pool.total_cents
        for debt in ordered:
            if remaining_pool <= 0:
                break
            applied = min(remaining_pool, current[debt.id])
            current[debt.id] -= applied
            rows[debt.id].extra_cents += applied
            remaining_pool -= applied
            if current[debt.id] == 0:
                paid_this_month.add(debt.id)

        for debt in debts:
            rows[debt.id].ending_cents = current[debt.id]
        for debt_id in paid_this_month:
            if projection.payoff_months[debt_id] is None:
                projection.payoff_months[debt_id] = ref
        paid_before |= paid_this_month

        projection.months.append(
            ProjectionMonth(
                month=ref,
                target_debt_id=target_id,
                pool=pool,
                debts=rows,
                unused_pool_cents=remaining_pool,
            )
        )
        ref = ref.next()

    unpaid = [debt.id for debt in debts if current[debt.id] > 0]
    if unpaid:
        projection.horizon_exceeded = True
        logger.warning(
            f"snowball_horizon_exceeded: months={horizon} unpaid={','.join(unpaid)}"
        )
    return projection


def project_from_ledger(
    workspace: Workspace,
    year: int,
    month: int,
    include_extra: bool = True,
) -> Projection:
    """Project from (year, month), opening at what the ledger says is still owed."""
    start = MonthRef(year, month)
    summaries = debt_summaries(workspace.ledger, workspace.debts, cutoff=start.first_day)
    return project_snowball(
        workspace.debts,
        workspace.settings,
        workspace.infusions,
        year,
        month,
        include_extra,
        balances={summary.debt.id: summary.remaining_cents for summary in summaries},
    )
