"""Reconciliation of expanded occurrences with the stored ledger, and the
mutations users make to it (one-off entries, skips, edit scopes)."""

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Iterable, Optional

from domain import (
    EditScope,
    EntryType,
    Ledger,
    RecurringTemplate,
    TransactionInstance,
    Workspace,
    new_id,
)
from periods import MonthRef
from recurrence import (
    MonthExpansion,
    Occurrence,
    RecurrenceEngine,
    count_occurrences_before,
    month_anchor_day,
    occurrence_amount,
    validate_template,
)

logger = logging.getLogger(__name__)


class ConstraintViolation(ValueError):
    pass


@dataclass(frozen=True)
class InstanceEdit:
    amount_cents: int
    entry_type: EntryType
    description: str


def instance_from_occurrence(
    template: RecurringTemplate, occurrence: Occurrence
) -> TransactionInstance:
    return TransactionInstance(
        amount_cents=occurrence.amount_cents,
        entry_type=EntryType(template.entry_type),
        description=template.description,
        recurring_id=template.id,
        original_date=occurrence.original_date,
        debt_id=template.debt_id,
        debt_role=template.debt_role,
    )


def reconcile(template: RecurringTemplate, occurrence: Occurrence, ledger: Ledger) -> bool:
    """Merge one occurrence into the ledger; returns True when it was inserted.

    A modified instance for (date, template) always wins. An existing generated
    instance is refreshed in place so the ledger stays a function of the
    template. Projection-written instances count as modified here but are
    stripped like generated ones once their date is no longer justified.
    """
    day = occurrence.date
    if ledger.find(day, template.id, modified=True) is not None:
        return False
    existing = ledger.find(day, template.id, modified=False)
    fresh = instance_from_occurrence(template, occurrence)
    if existing is None:
        ledger.append(day, fresh)
        return True
    if existing != fresh:
        existing.amount_cents = fresh.amount_cents
        existing.entry_type = fresh.entry_type
        existing.description = fresh.description
        existing.original_date = fresh.original_date
        existing.debt_id = fresh.debt_id
        existing.debt_role = fresh.debt_role
        ledger.touch()
    return False


def apply_recurring_month(
    ledger: Ledger,
    templates: Iterable[RecurringTemplate],
    year: int,
    month: int,
    *,
    engine: Optional[RecurrenceEngine] = None,
) -> MonthExpansion:
    templates = list(templates)
    engine = engine or RecurrenceEngine()
    expansion = engine.expand_month(templates, year, month)
    broken = {issue.template_id for issue in expansion.issues}
    known = {template.id for template in templates if template.id not in broken}
    justified = {(occurrence.date, template_id) for template_id, occurrence in expansion.all()}

    stripped = 0
    for day in ledger.dates_in(expansion.month):
        stripped += ledger.retain(
            day,
            lambda item, day=day: not (
                (item.is_generated or item.projected)
                and item.recurring_id in known
                and (day, item.recurring_id) not in justified
            ),
        )

    by_id = {template.id: template for template in templates}
    inserted = 0
    for template_id, occurrence in expansion.all():
        if reconcile(by_id[template_id], occurrence, ledger):
            inserted += 1
    if stripped or inserted:
        logger.info(
            f"recurring_applied: month={expansion.month.key} inserted={inserted} stripped={stripped}"
        )
    return expansion


def _balance_taken(ledger: Ledger, day: date, ignore: Optional[TransactionInstance] = None) -> bool:
    return any(
        item.entry_type == EntryType.balance and item is not ignore
        for item in ledger.entries.get(day, [])
    )


def add_instance(ledger: Ledger, day: date, instance: TransactionInstance) -> TransactionInstance:
    if instance.amount_cents < 0:
        raise ConstraintViolation("Amount must be non-negative")
    if instance.entry_type == EntryType.balance:
        if instance.recurring_id:
            raise ConstraintViolation("Recurring entries cannot be balance entries")
        if _balance_taken(ledger, day):
            raise ConstraintViolation(f"{day.isoformat()} already has a balance entry")
    if instance.recurring_id and ledger.find(day, instance.recurring_id) is not None:
        raise ConstraintViolation(
            f"{day.isoformat()} already has an entry for template {instance.recurring_id}"
        )
    ledger.append(day, instance)
    return instance


def toggle_skip(
    ledger: Ledger, day: date, recurring_id: str, skipped: Optional[bool] = None
) -> bool:
    if not recurring_id:
        raise ConstraintViolation("Only recurring entries can be skipped")
    if skipped is None:
        skipped = not ledger.is_skipped(day, recurring_id)
    ledger.set_skipped(day, recurring_id, skipped)
    return skipped


def _check_template(template: RecurringTemplate) -> None:
    if template.entry_type == EntryType.balance:
        raise ConstraintViolation("Recurring templates cannot be balance entries")
    validate_template(template)


def _months_with(ledger: Ledger, template_id: str) -> set[MonthRef]:
    return {
        MonthRef.of(day) for day, item in ledger.iter_items() if item.recurring_id == template_id
    }


def _reapply(workspace: Workspace, months: Iterable[MonthRef]) -> None:
    for month in sorted(set(months)):
        apply_recurring_month(workspace.ledger, workspace.templates, month.year, month.month)


def add_template(workspace: Workspace, template: RecurringTemplate) -> RecurringTemplate:
    _check_template(template)
    if workspace.find_template(template.id) is not None:
        raise ConstraintViolation(f"Template {template.id} already exists")
    workspace.templates.append(template)
    workspace.ledger.touch()
    return template


def update_template(workspace: Workspace, updated: RecurringTemplate) -> RecurringTemplate:
    current = workspace.template(updated.id)
    _check_template(updated)
    months = _months_with(workspace.ledger, current.id)
    workspace.templates[workspace.templates.index(current)] = updated
    workspace.ledger.touch()
    _reapply(workspace, months)
    return updated


def delete_template(
    workspace: Workspace, template_id: str, today: date, *, force: bool = False
) -> int:
    """Remove a template, its instances dated on/after ``today`` and its skips."""
    template = workspace.template(template_id)
    if template.is_debt_minimum and not force:
        raise ConstraintViolation("Debt payment templates are managed by their debt")
    workspace.templates.remove(template)
    removed = 0
    for day in workspace.ledger.dates():
        if day < today:
            continue
        removed += workspace.ledger.retain(day, lambda item: item.recurring_id != template_id)
    workspace.ledger.clear_skips(template_id)
    workspace.ledger.touch()
    logger.info(f"template_deleted: id={template_id} removed={removed}")
    return removed


def _natural(day: date, item: TransactionInstance) -> date:
    return item.original_date or day


def _apply_edit(item: TransactionInstance, edit: InstanceEdit) -> None:
    item.amount_cents = edit.amount_cents
    item.entry_type = edit.entry_type
    item.description = edit.description


def update_instance(
    workspace: Workspace,
    day: date,
    index: int,
    edit: InstanceEdit,
    scope: EditScope = EditScope.this,
) -> TransactionInstance:
    ledger = workspace.ledger
    item = ledger.get(day, index)
    if edit.amount_cents < 0:
        raise ConstraintViolation("Amount must be non-negative")
    if edit.entry_type == EntryType.balance:
        if item.is_recurring:
            raise ConstraintViolation("Recurring entries cannot be balance entries")
        if _balance_taken(ledger, day, ignore=item):
            raise ConstraintViolation(f"{day.isoformat()} already has a balance entry")

    template = workspace.find_template(item.recurring_id)
    if scope != EditScope.this and template is not None and template.is_debt_minimum:
        raise ConstraintViolation("Debt payment templates are managed by their debt")
    if template is None or scope == EditScope.this:
        _apply_edit(item, edit)
        if item.is_recurring:
            item.modified_instance = True
        item.projected = False
        ledger.touch()
        return item

    split = _natural(day, item)
    if scope == EditScope.all or split <= template.start_date:
        _edit_all(workspace, template, edit)
        return item
    return _edit_future(workspace, template, day, item, edit)


def _edit_all(workspace: Workspace, template: RecurringTemplate, edit: InstanceEdit) -> None:
    template.amount_cents = edit.amount_cents
    template.entry_type = edit.entry_type
    template.description = edit.description
    for day, item in workspace.ledger.iter_items():
        if item.recurring_id != template.id or item.modified_instance:
            continue
        item.amount_cents = occurrence_amount(template, _natural(day, item))
        item.entry_type = template.entry_type
        item.description = template.description
    workspace.ledger.touch()


def _edit_future(
    workspace: Workspace,
    template: RecurringTemplate,
    day: date,
    item: TransactionInstance,
    edit: InstanceEdit,
) -> TransactionInstance:
    ledger = workspace.ledger
    split = _natural(day, item)
    remaining = None
    exhausted = False
    if template.max_occurrences:
        remaining = template.max_occurrences - count_occurrences_before(template, split)
        exhausted = remaining <= 0
    successor = replace(
        template,
        id=new_id(),
        start_date=split,
        amount_cents=edit.amount_cents,
        entry_type=edit.entry_type,
        description=edit.description,
        max_occurrences=None if exhausted else remaining,
        # the split date may be clamped; keep the schedule's own day
        anchor_day=month_anchor_day(template),
    )
    if exhausted:
        successor.end_date = split - timedelta(days=1)
    template.end_date = split - timedelta(days=1)
    workspace.templates.append(successor)

    touched = set()
    for current_day in ledger.dates():
        for entry in list(ledger.entries.get(current_day, [])):
            if entry.recurring_id != template.id or _natural(current_day, entry) < split:
                continue
            touched.add(MonthRef.of(current_day))
            if entry is item or entry.modified_instance:
                entry.recurring_id = successor.id
            else:
                ledger.remove(current_day, entry)
    _apply_edit(item, edit)

    for skip_day in sorted(ledger.skips):
        if skip_day >= split and template.id in ledger.skips[skip_day]:
            ledger.set_skipped(skip_day, template.id, False)
            ledger.set_skipped(skip_day, successor.id, True)
    ledger.touch()
    _reapply(workspace, touched)
    logger.info(
        f"template_split: id={template.id} successor={successor.id} from={split.isoformat()}"
    )
    return item


def delete_instance(
    workspace: Workspace,
    day: date,
    index: int,
    scope: EditScope = EditScope.this,
    *,
    today: Optional[date] = None,
) -> None:
    ledger = workspace.ledger
    item = ledger.get(day, index)
    if not item.is_recurring:
        ledger.remove(day, item)
        return
    template = workspace.find_template(item.recurring_id)
    if scope == EditScope.this or template is None:
        ledger.set_skipped(day, item.recurring_id, True)
        return
    if template.is_debt_minimum:
        raise ConstraintViolation("Debt payment templates are managed by their debt")
    if scope == EditScope.all:
        delete_template(workspace, template.id, today or day)
        return

    split = _natural(day, item)
    template.end_date = split - timedelta(days=1)
    for current_day in ledger.dates():
        ledger.retain(
            current_day,
            lambda entry, current_day=current_day: not (
                entry.recurring_id == template.id and _natural(current_day, entry) >= split
            ),
        )
    ledger.clear_skips(template.id, on_or_after=split)
    ledger.touch()
