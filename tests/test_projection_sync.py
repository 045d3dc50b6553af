from datetime import date

from domain import (
    Debt,
    DebtRole,
    EntryType,
    RecurrenceKind,
    Schedule,
    SnowballSettings,
    Workspace,
)
from ledger import InstanceEdit, apply_recurring_month, update_instance
from projection_sync import describe, snowball_payment_date, sync_projection_to_ledger
from periods import MonthRef
from snowball import project_from_ledger, sync_minimum_templates

TODAY = date(2024, 1, 1)


def _workspace(debts=None, extra=20_000, months=(1, 2, 3)) -> Workspace:
    workspace = Workspace(
        debts=debts
        or [
            Debt(id="a", name="A", balance_cents=50_000, min_payment_cents=5_000, due_day=15),
            Debt(id="b", name="B", balance_cents=100_000, min_payment_cents=10_000, due_day=20),
        ],
        settings=SnowballSettings(base_extra_cents=extra, auto_generate=True),
    )
    sync_minimum_templates(workspace, today=TODAY)
    for month in months:
        apply_recurring_month(workspace.ledger, workspace.templates, 2024, month)
    return workspace


def _rows(workspace: Workspace, month: MonthRef) -> list[tuple]:
    return [
        (
            day,
            item.recurring_id,
            item.debt_id,
            item.debt_role,
            item.amount_cents,
            workspace.ledger.is_skipped(day, item.recurring_id),
        )
        for day, item in workspace.ledger.iter_items()
        if month.contains(day)
    ]


def _snowballs(workspace: Workspace) -> list[tuple]:
    return [
        (day, item.debt_id, item.amount_cents, item.snowball_month, item.description)
        for day, item in workspace.ledger.iter_items()
        if item.debt_role == DebtRole.snowball
    ]


def test_sync_writes_minimums_and_snowball_payment():
    workspace = _workspace()
    projection = project_from_ledger(workspace, 2024, 1)
    result = sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    assert result.changed

    assert _rows(workspace, MonthRef(2024, 1)) == [
        (date(2024, 1, 15), "debt-min-a", "a", DebtRole.minimum, 5_000, False),
        (date(2024, 1, 15), None, "a", DebtRole.snowball, 20_000, False),
        (date(2024, 1, 20), "debt-min-b", "b", DebtRole.minimum, 10_000, False),
    ]
    assert _snowballs(workspace) == [
        (date(2024, 1, 15), "a", 20_000, "2024-1", "Snowball Payment: A")
    ]
    minimum = workspace.ledger.find(date(2024, 1, 15), "debt-min-a")
    assert minimum.projected is True
    assert minimum.modified_instance is True


def test_sync_is_idempotent():
    workspace = _workspace()
    projection = project_from_ledger(workspace, 2024, 1)
    sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    before = _rows(workspace, MonthRef(2024, 1))
    again = sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    assert again.changed is False
    assert _rows(workspace, MonthRef(2024, 1)) == before


def test_past_months_are_left_alone():
    workspace = _workspace()
    projection = project_from_ledger(workspace, 2024, 1)
    before = _rows(workspace, MonthRef(2024, 1))
    result = sync_projection_to_ledger(
        workspace, projection, 2024, 1, today=date(2024, 3, 1)
    )
    assert result.skipped_past is True
    assert result.changed is False
    assert _rows(workspace, MonthRef(2024, 1)) == before
    assert describe(result)["skipped_past"] is True
    assert describe(None) == {"ran": False}


def test_paid_off_debt_is_pruned_in_later_months():
    workspace = _workspace()
    projection = project_from_ledger(workspace, 2024, 1)
    for month in (1, 2, 3):
        sync_projection_to_ledger(workspace, projection, 2024, month, today=TODAY)

    assert workspace.debts[0].payoff_date == date(2024, 2, 29)
    assert workspace.template("debt-min-a").end_date == date(2024, 2, 29)
    march = _rows(workspace, MonthRef(2024, 3))
    assert all(row[2] != "a" for row in march)
    assert (date(2024, 3, 20), None, "b", DebtRole.snowball, 25_000, False) in march

    # the payoff month still carries its minimum payment
    february = _rows(workspace, MonthRef(2024, 2))
    assert (date(2024, 2, 15), "debt-min-a", "a", DebtRole.minimum, 5_000, False) in february


def test_payoff_month_minimum_is_capped():
    workspace = _workspace(
        debts=[Debt(id="a", name="A", balance_cents=3_000, min_payment_cents=5_000, due_day=15)],
        extra=0,
    )
    projection = project_from_ledger(workspace, 2024, 1)
    sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    assert workspace.ledger.find(date(2024, 1, 15), "debt-min-a").amount_cents == 3_000

    sync_projection_to_ledger(workspace, projection, 2024, 2, today=TODAY)
    assert _rows(workspace, MonthRef(2024, 2)) == []


def test_exhausted_budget_skips_remaining_minimums():
    # Mondays in January 2024: 1, 8, 15, 22, 29
    debt = Debt(
        id="w",
        name="Weekly",
        balance_cents=12_000,
        min_payment_cents=5_000,
        schedule=Schedule(kind=RecurrenceKind.weekly, start_date=date(2024, 1, 1)),
    )
    workspace = _workspace(debts=[debt], extra=0, months=(1,))
    projection = project_from_ledger(workspace, 2024, 1)
    sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    rows = [(row[0].day, row[4], row[5]) for row in _rows(workspace, MonthRef(2024, 1))]
    assert rows == [
        (1, 5_000, False),
        (8, 5_000, False),
        (15, 2_000, False),
        (22, 0, True),
        (29, 0, True),
    ]


def test_user_edited_minimum_is_kept_and_consumes_budget():
    debt = Debt(
        id="w",
        name="Weekly",
        balance_cents=12_000,
        min_payment_cents=5_000,
        schedule=Schedule(kind=RecurrenceKind.weekly, start_date=date(2024, 1, 1)),
    )
    workspace = _workspace(debts=[debt], extra=0, months=(1,))
    update_instance(
        workspace, date(2024, 1, 1), 0, InstanceEdit(8_000, EntryType.expense, "Paid extra")
    )
    projection = project_from_ledger(workspace, 2024, 1)
    sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    amounts = [row[4] for row in _rows(workspace, MonthRef(2024, 1))]
    assert amounts == [8_000, 4_000, 0, 0, 0]


def test_snowball_payment_follows_due_day_changes():
    workspace = _workspace()
    projection = project_from_ledger(workspace, 2024, 1)
    sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)

    workspace.debts[0].due_day = 25
    projection = project_from_ledger(workspace, 2024, 1)
    result = sync_projection_to_ledger(workspace, projection, 2024, 1, today=TODAY)
    assert result.upserted >= 1
    assert _snowballs(workspace) == [
        (date(2024, 1, 25), "a", 20_000, "2024-1", "Snowball Payment: A")
    ]
    minimums = [row for row in _rows(workspace, MonthRef(2024, 1)) if row[1] == "debt-min-a"]
    assert [row[0] for row in minimums] == [date(2024, 1, 25)]


def test_snowball_payment_date_clamps_to_month():
    assert snowball_payment_date(31, MonthRef(2024, 2)) == date(2024, 2, 29)
    assert snowball_payment_date(0, MonthRef(2024, 2)) == date(2024, 2, 1)
