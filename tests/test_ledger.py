from datetime import date

import pytest

from domain import (
    Debt,
    EditScope,
    EntryType,
    Ledger,
    RecurrenceKind,
    RecurringTemplate,
    TransactionInstance,
    Workspace,
)
from ledger import (
    ConstraintViolation,
    InstanceEdit,
    add_instance,
    add_template,
    apply_recurring_month,
    delete_instance,
    delete_template,
    toggle_skip,
    update_instance,
    update_template,
)
from recurrence import expand
from snowball import sync_minimum_templates


def _rent(**kwargs) -> RecurringTemplate:
    return RecurringTemplate(
        id=kwargs.pop("id", "rent"),
        start_date=kwargs.pop("start_date", date(2024, 1, 5)),
        kind=RecurrenceKind.monthly,
        amount_cents=kwargs.pop("amount_cents", 10_000),
        entry_type=EntryType.expense,
        description="Rent",
        **kwargs,
    )


def _workspace(*templates: RecurringTemplate, months=((2024, 1), (2024, 2))) -> Workspace:
    workspace = Workspace(templates=list(templates))
    for year, month in months:
        apply_recurring_month(workspace.ledger, workspace.templates, year, month)
    return workspace


def _snapshot(ledger: Ledger) -> list[tuple]:
    return [
        (day, item.recurring_id, item.amount_cents, item.modified_instance)
        for day, item in ledger.iter_items()
    ]


def test_apply_recurring_month_is_idempotent():
    workspace = _workspace(_rent())
    before = _snapshot(workspace.ledger)
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 1)
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 2)
    assert _snapshot(workspace.ledger) == before
    assert before == [
        (date(2024, 1, 5), "rent", 10_000, False),
        (date(2024, 2, 5), "rent", 10_000, False),
    ]


def test_modified_instance_survives_reapply():
    workspace = _workspace(_rent())
    update_instance(
        workspace,
        date(2024, 2, 5),
        0,
        InstanceEdit(12_345, EntryType.expense, "Rent (late fee)"),
    )
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 2)
    items = workspace.ledger.instances(date(2024, 2, 5))
    assert len(items) == 1
    assert items[0].amount_cents == 12_345
    assert items[0].modified_instance is True


def test_generated_instances_follow_template_changes():
    workspace = _workspace(_rent())
    update_template(workspace, _rent(amount_cents=11_000))
    amounts = [item.amount_cents for _, item in workspace.ledger.iter_items()]
    assert amounts == [11_000, 11_000]


def test_stale_generated_instance_is_stripped():
    workspace = _workspace(_rent())
    update_template(workspace, _rent(start_date=date(2024, 1, 10)))
    assert workspace.ledger.dates() == [date(2024, 1, 10), date(2024, 2, 10)]


def test_skip_is_kept_across_reapply():
    workspace = _workspace(_rent())
    assert toggle_skip(workspace.ledger, date(2024, 1, 5), "rent") is True
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 1)
    assert workspace.ledger.is_skipped(date(2024, 1, 5), "rent")
    assert len(workspace.ledger.instances(date(2024, 1, 5))) == 1
    assert toggle_skip(workspace.ledger, date(2024, 1, 5), "rent") is False


def test_only_one_balance_entry_per_day():
    ledger = Ledger()
    add_instance(ledger, date(2024, 1, 1), TransactionInstance(5_000, EntryType.balance))
    with pytest.raises(ConstraintViolation):
        add_instance(ledger, date(2024, 1, 1), TransactionInstance(6_000, EntryType.balance))
    add_instance(ledger, date(2024, 1, 1), TransactionInstance(100, EntryType.income))
    assert len(ledger.instances(date(2024, 1, 1))) == 2


def test_balance_templates_are_rejected():
    workspace = Workspace()
    template = _rent()
    template.entry_type = EntryType.balance
    with pytest.raises(ConstraintViolation):
        add_template(workspace, template)


def test_get_unknown_index_is_not_found():
    with pytest.raises(ValueError, match="not found"):
        Ledger().get(date(2024, 1, 1), 0)


def test_edit_future_splits_template():
    workspace = _workspace(
        _rent(), months=((2024, 1), (2024, 2), (2024, 3), (2024, 4))
    )
    update_instance(
        workspace,
        date(2024, 3, 5),
        0,
        InstanceEdit(15_000, EntryType.expense, "Rent (new lease)"),
        EditScope.future,
    )
    original = workspace.template("rent")
    assert original.end_date == date(2024, 3, 4)
    successor = next(t for t in workspace.templates if t.id != "rent")
    assert successor.start_date == date(2024, 3, 5)
    assert successor.amount_cents == 15_000

    rows = [(day, item.recurring_id, item.amount_cents) for day, item in workspace.ledger.iter_items()]
    assert rows == [
        (date(2024, 1, 5), "rent", 10_000),
        (date(2024, 2, 5), "rent", 10_000),
        (date(2024, 3, 5), successor.id, 15_000),
        (date(2024, 4, 5), successor.id, 15_000),
    ]


def test_edit_future_carries_remaining_occurrences():
    workspace = _workspace(_rent(max_occurrences=4), months=((2024, 1), (2024, 2), (2024, 3)))
    update_instance(
        workspace,
        date(2024, 3, 5),
        0,
        InstanceEdit(15_000, EntryType.expense, "Rent"),
        EditScope.future,
    )
    successor = next(t for t in workspace.templates if t.id != "rent")
    assert successor.max_occurrences == 2


def test_edit_all_rewrites_unmodified_instances():
    workspace = _workspace(_rent(), months=((2024, 1), (2024, 2), (2024, 3)))
    update_instance(
        workspace, date(2024, 1, 5), 0, InstanceEdit(9_000, EntryType.expense, "Custom")
    )
    update_instance(
        workspace,
        date(2024, 2, 5),
        0,
        InstanceEdit(20_000, EntryType.expense, "Rent"),
        EditScope.all,
    )
    amounts = [item.amount_cents for _, item in workspace.ledger.iter_items()]
    assert amounts == [9_000, 20_000, 20_000]
    assert workspace.template("rent").amount_cents == 20_000


def test_delete_this_skips_recurring_instance():
    workspace = _workspace(_rent())
    delete_instance(workspace, date(2024, 2, 5), 0)
    assert workspace.ledger.is_skipped(date(2024, 2, 5), "rent")
    assert len(workspace.ledger.instances(date(2024, 2, 5))) == 1


def test_delete_one_off_removes_it():
    workspace = Workspace()
    add_instance(workspace.ledger, date(2024, 1, 2), TransactionInstance(500, EntryType.income))
    delete_instance(workspace, date(2024, 1, 2), 0)
    assert workspace.ledger.dates() == []


def test_delete_future_truncates_template():
    workspace = _workspace(_rent(), months=((2024, 1), (2024, 2), (2024, 3)))
    workspace.ledger.set_skipped(date(2024, 3, 5), "rent", True)
    delete_instance(workspace, date(2024, 2, 5), 0, EditScope.future)
    assert workspace.template("rent").end_date == date(2024, 2, 4)
    assert workspace.ledger.dates() == [date(2024, 1, 5)]
    assert not workspace.ledger.is_skipped(date(2024, 3, 5), "rent")
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 3)
    assert workspace.ledger.dates() == [date(2024, 1, 5)]


def test_delete_template_keeps_past_instances():
    workspace = _workspace(_rent())
    workspace.ledger.set_skipped(date(2024, 1, 5), "rent", True)
    removed = delete_template(workspace, "rent", date(2024, 2, 1))
    assert removed == 1
    assert workspace.ledger.dates() == [date(2024, 1, 5)]
    assert workspace.ledger.skips == {}


def test_debt_minimum_allows_only_this_scope():
    workspace = Workspace(
        debts=[Debt(id="card", name="Card", balance_cents=50_000, min_payment_cents=2_500, due_day=10)]
    )
    sync_minimum_templates(workspace, today=date(2024, 1, 1))
    apply_recurring_month(workspace.ledger, workspace.templates, 2024, 1)
    edit = InstanceEdit(3_000, EntryType.expense, "Debt Payment: Card")
    with pytest.raises(ConstraintViolation):
        update_instance(workspace, date(2024, 1, 10), 0, edit, EditScope.future)
    with pytest.raises(ConstraintViolation):
        delete_instance(workspace, date(2024, 1, 10), 0, EditScope.all)
    with pytest.raises(ConstraintViolation):
        delete_template(workspace, "debt-min-card", date(2024, 1, 1))
    item = update_instance(workspace, date(2024, 1, 10), 0, edit)
    assert item.amount_cents == 3_000


def test_edit_future_from_clamped_date_keeps_schedule_day():
    workspace = _workspace(
        _rent(start_date=date(2024, 1, 30)),
        months=((2024, 1), (2024, 2), (2024, 3), (2024, 4)),
    )
    update_instance(
        workspace,
        date(2024, 2, 29),
        0,
        InstanceEdit(12_000, EntryType.expense, "Rent"),
        EditScope.future,
    )
    successor = next(t for t in workspace.templates if t.id != "rent")
    assert successor.start_date == date(2024, 2, 29)
    assert successor.anchor_day == 30
    rows = [(day, item.recurring_id) for day, item in workspace.ledger.iter_items()]
    assert rows == [
        (date(2024, 1, 30), "rent"),
        (date(2024, 2, 29), successor.id),
        (date(2024, 3, 30), successor.id),
        (date(2024, 4, 30), successor.id),
    ]


def test_edit_future_after_quota_is_used_adds_no_occurrences():
    workspace = _workspace(_rent(max_occurrences=3), months=((2024, 1), (2024, 2), (2024, 3)))
    edit = InstanceEdit(15_000, EntryType.expense, "Rent")
    update_instance(workspace, date(2024, 3, 5), 0, edit)
    workspace.template("rent").max_occurrences = 2

    update_instance(workspace, date(2024, 3, 5), 0, edit, EditScope.future)
    successor = next(t for t in workspace.templates if t.id != "rent")
    assert successor.end_date == date(2024, 3, 4)
    assert expand(successor, 2024, 3) == []
    assert expand(successor, 2024, 4) == []
    march = workspace.ledger.instances(date(2024, 3, 5))
    assert [(item.recurring_id, item.amount_cents) for item in march] == [(successor.id, 15_000)]
