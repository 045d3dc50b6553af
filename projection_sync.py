import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from domain import DebtRole, EntryType, TransactionInstance, Workspace
from ledger import apply_recurring_month
from periods import MonthRef
from snowball import Projection, minimum_template_id, sync_minimum_templates

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    month: MonthRef
    skipped_past: bool = False
    pruned: int = 0
    rewritten: int = 0
    upserted: int = 0
    removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.pruned or self.rewritten or self.upserted or self.removed)


def snowball_payment_date(due_day: int, month: MonthRef) -> date:
    return date(month.year, month.month, min(max(due_day or 1, 1), month.length))


def _prune_paid_debts(
    workspace: Workspace, projection: Projection, target: MonthRef, today: date
) -> int:
    """End the minimum-payment template of every debt paid off before ``target``."""
    for debt in workspace.debts:
        payoff = projection.payoff_months.get(debt.id)
        if payoff is not None and payoff < target:
            debt.payoff_date = payoff.last_day
        elif debt.payoff_date is not None and debt.payoff_date >= target.first_day:
            debt.payoff_date = None
    sync_minimum_templates(workspace, today=today)

    paid = {
        minimum_template_id(debt)
        for debt in workspace.debts
        if debt.payoff_date is not None and debt.payoff_date < target.first_day
    }
    pruned = 0
    for day in workspace.ledger.dates_in(target):
        pruned += workspace.ledger.retain(day, lambda item: item.recurring_id not in paid)
        for template_id in paid:
            if workspace.ledger.is_skipped(day, template_id):
                workspace.ledger.set_skipped(day, template_id, False)
    apply_recurring_month(workspace.ledger, workspace.templates, target.year, target.month)
    return pruned


def _rewrite_minimums(workspace: Workspace, projection: Projection, target: MonthRef) -> int:
    row = projection.month(target)
    if row is None:
        return 0
    ledger = workspace.ledger
    rewritten = 0
    for debt in workspace.debts:
        debt_row = row.debts.get(debt.id)
        if debt_row is None:
            continue
        template = workspace.find_template(minimum_template_id(debt))
        if template is None:
            continue
        template_id = template.id
        budget = debt_row.minimum_cents
        for day in ledger.dates_in(target):
            for item in ledger.entries.get(day, []):
                if item.recurring_id != template_id:
                    continue
                if item.modified_instance and not item.projected:
                    # user edits stay as entered
                    budget -= min(budget, item.amount_cents)
                    continue
                amount = min(template.amount_cents, budget)
                budget -= amount
                was_zero = item.projected and item.amount_cents == 0
                if item.amount_cents != amount or not item.projected:
                    item.amount_cents = amount
                    item.modified_instance = True
                    item.projected = True
                    ledger.touch()
                    rewritten += 1
                if amount == 0 and not ledger.is_skipped(day, template_id):
                    ledger.set_skipped(day, template_id, True)
                    rewritten += 1
                elif amount > 0 and was_zero and ledger.is_skipped(day, template_id):
                    ledger.set_skipped(day, template_id, False)
                    rewritten += 1
    return rewritten


def _sync_snowball_payments(
    workspace: Workspace, projection: Projection, target: MonthRef
) -> tuple[int, int]:
    ledger = workspace.ledger
    row = projection.month(target)
    wanted = {}
    if row is not None:
        for debt in workspace.debts:
            debt_row = row.debts.get(debt.id)
            if debt_row is not None and debt_row.extra_cents > 0:
                wanted[debt.id] = (debt, debt_row.extra_cents)

    upserted = removed = 0
    seen: set[str] = set()
    for day, item in list(ledger.iter_items()):
        if item.debt_role != DebtRole.snowball or item.snowball_month != target.key:
            continue
        entry = wanted.get(item.debt_id)
        if entry is None or item.debt_id in seen:
            ledger.remove(day, item)
            removed += 1
            continue
        seen.add(item.debt_id)
        debt, amount = entry
        due = snowball_payment_date(debt.due_day, target)
        description = f"Snowball Payment: {debt.name}"
        if due != day:
            ledger.remove(day, item)
            ledger.append(due, item)
            upserted += 1
        if item.amount_cents != amount or item.description != description:
            item.amount_cents = amount
            item.description = description
            ledger.touch()
            upserted += 1

    for debt_id, (debt, amount) in wanted.items():
        if debt_id in seen:
            continue
        ledger.append(
            snowball_payment_date(debt.due_day, target),
            TransactionInstance(
                amount_cents=amount,
                entry_type=EntryType.expense,
                description=f"Snowball Payment: {debt.name}",
                debt_id=debt.id,
                debt_role=DebtRole.snowball,
                snowball_month=target.key,
                projected=True,
            ),
        )
        upserted += 1
    return upserted, removed


def sync_projection_to_ledger(
    workspace: Workspace,
    projection: Projection,
    year: int,
    month: int,
    *,
    today: date,
) -> SyncResult:
    """Write the projected payments for one month into the ledger.

    Past months are left alone. Re-running with the same projection is a
    no-op.
    """
    target = MonthRef(year, month)
    result = SyncResult(month=target)
    if target < MonthRef.of(today):
        result.skipped_past = True
        return result

    result.pruned = _prune_paid_debts(workspace, projection, target, today)
    result.rewritten = _rewrite_minimums(workspace, projection, target)
    result.upserted, result.removed = _sync_snowball_payments(workspace, projection, target)
    if result.changed:
        logger.info(
            f"snowball_sync: month={target.key} pruned={result.pruned} "
            f"rewritten={result.rewritten} upserted={result.upserted} removed={result.removed}"
        )
    return result


def describe(result: Optional[SyncResult]) -> dict:
    if result is None:
        return {"ran": False}
    return {
        "ran": True,
        "month": result.month.key,
        "skipped_past": result.skipped_past,
        "changed": result.changed,
        "pruned": result.pruned,
        "rewritten": result.rewritten,
        "upserted": result.upserted,
        "removed": result.removed,
    }
