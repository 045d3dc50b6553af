from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from domain import DebtRole, EditScope, EntryType, RecurrenceKind
from periods import Period
from schemas import (
    DebtIn,
    InfusionIn,
    InstanceEditIn,
    SkipIn,
    SnowballSettingsIn,
    TemplateIn,
    TransactionIn,
)
from services import (
    CalendarService,
    DebtService,
    TemplateService,
    TransactionService,
    WorkspaceStore,
    rebuild_monthly_balances,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _rent(**overrides) -> TemplateIn:
    data = dict(
        kind=RecurrenceKind.monthly,
        start_date=date(2024, 1, 5),
        amount_cents=100_000,
        entry_type=EntryType.expense,
        description="Rent",
    )
    data.update(overrides)
    return TemplateIn(**data)


def test_month_view_materializes_and_persists() -> None:
    session = make_session()
    template = TemplateService(session).create(_rent())

    view = CalendarService(session).month_view(2024, 3, today=date(2024, 3, 10))
    assert view.ledger.find(date(2024, 3, 5), template.id) is not None
    summary = view.calculator.monthly_summary(2024, 3)
    assert summary.expense_cents == 100_000
    assert summary.starting_cents == -200_000
    assert summary.ending_cents == -300_000

    stored = WorkspaceStore(session).load()
    assert stored.ledger.find(date(2024, 1, 5), template.id) is not None
    assert stored.monthly_balances["2024-3"].ending_cents == -300_000


def test_workspace_round_trip_keeps_flags() -> None:
    session = make_session()
    template = TemplateService(session).create(_rent(variable_percentage=5.0))
    CalendarService(session).month_view(2024, 2, today=date(2024, 2, 1))

    txns = TransactionService(session)
    txns.update(
        date(2024, 2, 5),
        0,
        InstanceEditIn(amount_cents=90_000, entry_type=EntryType.expense, description="Rent"),
        EditScope.this,
    )
    assert txns.set_skip(SkipIn(date=date(2024, 1, 5), recurring_id=template.id)) is True

    stored = WorkspaceStore(session).load()
    february = stored.ledger.instances(date(2024, 2, 5))
    assert february[0].amount_cents == 90_000
    assert february[0].modified_instance is True
    assert stored.ledger.is_skipped(date(2024, 1, 5), template.id)
    assert stored.template(template.id).variable_percentage == 5.0


def test_second_balance_entry_is_rejected() -> None:
    session = make_session()
    txns = TransactionService(session)
    txns.create(
        TransactionIn(date=date(2024, 1, 1), amount_cents=50_000, entry_type=EntryType.balance)
    )
    with pytest.raises(ValueError):
        txns.create(
            TransactionIn(date=date(2024, 1, 1), amount_cents=10, entry_type=EntryType.balance)
        )


def test_delete_scope_future_via_service() -> None:
    session = make_session()
    template = TemplateService(session).create(_rent())
    CalendarService(session).month_view(2024, 3, today=date(2024, 3, 1))
    TransactionService(session).delete(date(2024, 2, 5), 0, EditScope.future)

    stored = WorkspaceStore(session).load()
    assert stored.template(template.id).end_date == date(2024, 2, 4)
    assert [day for day in stored.ledger.dates() if day < date(2024, 4, 1)] == [
        date(2024, 1, 5)
    ]


def test_debt_owns_its_minimum_template() -> None:
    session = make_session()
    debt = DebtService(session).create(
        DebtIn(name="Card", balance_cents=50_000, min_payment_cents=2_500, due_day=10)
    )
    templates = TemplateService(session)
    minimum = templates.get(f"debt-min-{debt.id}")
    assert minimum.debt_role == DebtRole.minimum
    assert minimum.description == "Debt Payment: Card"

    with pytest.raises(ValueError):
        templates.update(minimum.id, _rent())
    with pytest.raises(ValueError):
        templates.delete(minimum.id)

    DebtService(session).delete(debt.id)
    with pytest.raises(ValueError, match="not found"):
        templates.get(minimum.id)


def test_unknown_records_raise_not_found() -> None:
    session = make_session()
    debts = DebtService(session)
    with pytest.raises(ValueError, match="not found"):
        debts.delete("missing")
    with pytest.raises(ValueError, match="not found"):
        debts.delete_infusion("missing")
    with pytest.raises(ValueError, match="not found"):
        debts.add_infusion(
            InfusionIn(name="Bonus", amount_cents=100, date=date(2024, 1, 1), target_debt_id="x")
        )


def test_projection_runs_on_a_snapshot() -> None:
    session = make_session()
    debts = DebtService(session)
    first = debts.create(
        DebtIn(name="A", balance_cents=50_000, min_payment_cents=5_000, due_day=15)
    )
    debts.create(DebtIn(name="B", balance_cents=100_000, min_payment_cents=10_000, due_day=20))
    debts.update_settings(SnowballSettingsIn(base_extra_cents=20_000, auto_generate=False))

    before = WorkspaceStore(session).load()
    projection, listed = debts.projection(2024, 1)
    assert projection.months[0].target_debt_id == first.id
    assert projection.months[0].balances[first.id] == 25_000
    assert {debt.name for debt in listed} == {"A", "B"}
    after = WorkspaceStore(session).load()
    assert list(after.ledger.iter_items()) == list(before.ledger.iter_items())


def test_sync_requires_auto_generate_or_force() -> None:
    session = make_session()
    debts = DebtService(session)
    debt = debts.create(
        DebtIn(
            name="A",
            balance_cents=50_000,
            min_payment_cents=5_000,
            due_day=15,
            start_date=date(2024, 1, 1),
        )
    )
    debts.update_settings(SnowballSettingsIn(base_extra_cents=20_000, auto_generate=False))
    assert debts.sync(2024, 1, today=date(2024, 1, 1)) is None

    result = debts.sync(2024, 1, force=True, today=date(2024, 1, 1))
    assert result is not None and result.changed
    stored = WorkspaceStore(session).load()
    snowballs = [
        (day, item.amount_cents)
        for day, item in stored.ledger.iter_items()
        if item.debt_role == DebtRole.snowball and item.debt_id == debt.id
    ]
    assert snowballs == [(date(2024, 1, 15), 20_000)]


def test_period_summaries_and_rebuild() -> None:
    session = make_session()
    TemplateService(session).create(_rent())
    summaries = CalendarService(session).period_summaries(
        Period("custom", date(2024, 1, 1), date(2024, 3, 31))
    )
    assert [summary.month.key for summary in summaries] == ["2024-1", "2024-2", "2024-3"]
    assert [summary.expense_cents for summary in summaries] == [100_000] * 3
    assert rebuild_monthly_balances(session) >= 3
