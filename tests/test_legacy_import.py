from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from domain import DayPattern, DebtRole, EntryType, RecurrenceKind
from legacy_import import (
    LegacyImportService,
    build_workspace,
    parse_day_pattern,
    parse_template,
)
from services import WorkspaceStore


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _payload() -> dict:
    return {
        "recurringTransactions": [
            {
                "id": "r1",
                "startDate": "2024-01-05",
                "recurrence": "monthly",
                "amount": 1200.5,
                "type": "expense",
                "description": "Rent",
            },
            {
                "id": "r2",
                "startDate": "2024-01-01",
                "recurrence": "bi-weekly",
                "amount": "800",
                "type": "income",
                "description": "Salary",
                "variableAmount": True,
                "variableType": "percentage",
                "variablePercentage": 1.5,
            },
        ],
        "transactions": {
            "2024-01-02": [{"amount": 50, "type": "income", "description": "Gift"}],
            "2024-01-05": [
                {
                    "amount": 1250,
                    "type": "expense",
                    "description": "Rent",
                    "isRecurring": True,
                    "modifiedRecurring": True,
                    "originalAmount": 1200.5,
                    "originalType": "expense",
                    "originalDescription": "Rent",
                }
            ],
            "2023-12-05": [
                {"amount": 1200.5, "type": "expense", "description": "Rent", "isRecurring": True}
            ],
        },
        "skippedTransactions": {"2024-02-05": ["r1"]},
        "monthlyBalances": {"2024-1": {"startingBalance": 0, "endingBalance": 0}},
        "debts": [
            {
                "id": "d1",
                "name": "Card",
                "balance": 500,
                "minPayment": 50,
                "dueDay": 15,
                "interestRate": 19.99,
            }
        ],
        "debtSnowballSettings": {"extraPayment": 100, "autoGenerate": False},
    }


def test_build_workspace_converts_amounts_and_links_instances():
    workspace, report = build_workspace(_payload())

    assert report.templates == 2
    assert report.transactions == 3
    assert report.linked_instances == 1
    assert report.unlinked_instances == 1
    assert report.skips == 1
    assert report.debts == 1

    rent = workspace.template("r1")
    assert rent.amount_cents == 120_050
    salary = workspace.template("r2")
    assert salary.kind == RecurrenceKind.biweekly
    assert salary.variable_percentage == 1.5

    linked = workspace.ledger.instances(date(2024, 1, 5))[0]
    assert linked.recurring_id == "r1"
    assert linked.modified_instance is True
    assert linked.amount_cents == 125_000

    # dated before the template started, so it stays a one-off
    orphan = workspace.ledger.instances(date(2023, 12, 5))[0]
    assert orphan.recurring_id is None

    assert workspace.ledger.is_skipped(date(2024, 2, 5), "r1")
    assert workspace.debts[0].balance_cents == 50_000
    assert workspace.settings.base_extra_cents == 10_000


def test_parse_day_pattern():
    assert parse_day_pattern("1-0") == DayPattern(ordinal=1, weekday=0)
    assert parse_day_pattern("-1-5") == DayPattern(ordinal=-1, weekday=5)
    assert parse_day_pattern("x") is None
    assert parse_day_pattern(None) is None


def test_parse_template_legacy_shapes():
    template = parse_template(
        {
            "id": "r3",
            "startDate": "2024-01-01",
            "recurrence": "semi-monthly",
            "amount": 10,
            "type": "expense",
            "semiMonthlyDays": [1, 15],
            "semiMonthlyLastDay": True,
        }
    )
    assert template.kind == RecurrenceKind.semimonthly
    assert template.semi_monthly_days == (1, 31)

    pattern = parse_template(
        {
            "id": "r4",
            "startDate": "2024-01-01",
            "recurrence": "monthly",
            "amount": 10,
            "type": "expense",
            "daySpecific": True,
            "daySpecificData": "-1-5",
        }
    )
    assert pattern.day_pattern == DayPattern(-1, 5)


def test_rejects_negative_amounts_and_bad_payloads():
    payload = _payload()
    payload["transactions"]["2024-01-03"] = [{"amount": -5, "type": "expense"}]
    workspace, report = build_workspace(payload)
    assert any("2024-01-03" in warning for warning in report.warnings)
    assert workspace.ledger.instances(date(2024, 1, 3)) == []

    with pytest.raises(ValueError):
        build_workspace({"transactions": {}})
    with pytest.raises(ValueError):
        build_workspace([])


def test_second_balance_on_a_day_is_dropped():
    payload = _payload()
    payload["transactions"]["2024-01-10"] = [
        {"amount": 100, "type": "balance"},
        {"amount": 200, "type": "balance"},
    ]
    workspace, report = build_workspace(payload)
    assert len(workspace.ledger.instances(date(2024, 1, 10))) == 1
    assert any("balance" in warning for warning in report.warnings)


def test_commit_replaces_workspace_and_derives_debt_templates():
    session = make_session()
    service = LegacyImportService(session)
    preview = service.preview(_payload())
    assert WorkspaceStore(session).load().templates == []
    assert preview.templates == 2

    service.commit(_payload(), today=date(2024, 1, 1))
    stored = WorkspaceStore(session).load()
    ids = {template.id for template in stored.templates}
    assert {"r1", "r2", "debt-min-d1"} <= ids
    minimum = stored.template("debt-min-d1")
    assert minimum.debt_role == DebtRole.minimum
    assert minimum.entry_type == EntryType.expense
    assert stored.debts[0].min_template_id == "debt-min-d1"
    assert "2024-1" in stored.monthly_balances
