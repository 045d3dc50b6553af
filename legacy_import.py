"""One-time import of the JSON export written by the old browser app.

Amounts there are floating point currency units, recurrence kinds use the
hyphenated spellings and, in the oldest exports, generated instances carry an
``isRecurring`` flag instead of a ``recurringId``. Those are linked to their
template once, here, and never again at runtime.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.orm import Session

from domain import (
    BusinessDayAdjustment,
    CashInfusion,
    CustomInterval,
    DayPattern,
    Debt,
    DebtRole,
    EntryType,
    IntervalUnit,
    Ledger,
    RecurrenceKind,
    RecurringTemplate,
    SnowballSettings,
    TransactionInstance,
    Workspace,
    new_id,
)
from services import WorkspaceStore, refresh_balances
from snowball import sync_minimum_templates

logger = logging.getLogger(__name__)

_KIND_ALIASES = {
    "bi-weekly": RecurrenceKind.biweekly,
    "semi-monthly": RecurrenceKind.semimonthly,
    "semi-annual": RecurrenceKind.semiannual,
    "semi-annually": RecurrenceKind.semiannual,
    "annually": RecurrenceKind.yearly,
    "one-time": RecurrenceKind.once,
}


@dataclass
class LegacyImportReport:
    templates: int = 0
    transactions: int = 0
    skips: int = 0
    debts: int = 0
    infusions: int = 0
    linked_instances: int = 0
    unlinked_instances: int = 0
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "templates": self.templates,
            "transactions": self.transactions,
            "skips": self.skips,
            "debts": self.debts,
            "infusions": self.infusions,
            "linked_instances": self.linked_instances,
            "unlinked_instances": self.unlinked_instances,
            "warnings": list(self.warnings),
        }


def _parse_amount_cents(value: Any) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Invalid legacy amount: {value}")
    try:
        cents = int(
            (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
    except InvalidOperation as exc:
        raise ValueError(f"Invalid legacy amount: {value}") from exc
    if cents < 0:
        raise ValueError("Legacy amount must be non-negative")
    return cents


def _parse_date(value: Any) -> date:
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid legacy date: {value}") from exc


def _optional_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    return _parse_date(value)


def _kind_from_legacy(value: Any) -> str:
    text = str(value or "once").strip().lower()
    if text in _KIND_ALIASES:
        return _KIND_ALIASES[text]
    try:
        return RecurrenceKind(text)
    except ValueError:
        # kept verbatim; expansion reports it as an invalid template
        return text


def parse_day_pattern(text: Any) -> Optional[DayPattern]:
    """Parse "1-0" (first Sunday) or "-1-5" (last Friday)."""
    if not text:
        return None
    parts = str(text).split("-")
    try:
        if len(parts) == 2:
            ordinal, weekday = int(parts[0]), int(parts[1])
        elif len(parts) == 3 and parts[0] == "":
            ordinal, weekday = -int(parts[1]), int(parts[2])
        else:
            return None
    except ValueError:
        return None
    return DayPattern(ordinal=ordinal, weekday=weekday)


def _entry_type(value: Any) -> EntryType:
    try:
        return EntryType(str(value or "expense").lower())
    except ValueError as exc:
        raise ValueError(f"Unknown legacy entry type: {value}") from exc


def _debt_role(value: Any) -> Optional[DebtRole]:
    if not value:
        return None
    try:
        return DebtRole(value)
    except ValueError:
        return None


def parse_template(raw: dict[str, Any]) -> RecurringTemplate:
    kind = _kind_from_legacy(raw.get("recurrence"))
    pattern = parse_day_pattern(raw.get("daySpecificData")) if raw.get("daySpecific") else None
    days = raw.get("semiMonthlyDays")
    semi_monthly = None
    if days and len(days) == 2:
        semi_monthly = (int(days[0]), int(days[1]))
    if raw.get("semiMonthlyLastDay"):
        first = semi_monthly[0] if semi_monthly else 15
        semi_monthly = (first, 31)
    interval = None
    custom = raw.get("customInterval")
    if custom:
        interval = CustomInterval(
            value=int(custom.get("value", 1)), unit=IntervalUnit(custom.get("unit", "days"))
        )
    variable = None
    if raw.get("variableAmount") and raw.get("variableType", "percentage") == "percentage":
        variable = float(raw.get("variablePercentage") or 0)
    max_occurrences = raw.get("maxOccurrences")
    return RecurringTemplate(
        id=str(raw.get("id") or new_id()),
        start_date=_parse_date(raw.get("startDate")),
        kind=kind,
        amount_cents=_parse_amount_cents(raw.get("amount", 0)),
        entry_type=_entry_type(raw.get("type")),
        description=str(raw.get("description") or ""),
        end_date=_optional_date(raw.get("endDate")),
        max_occurrences=int(max_occurrences) if max_occurrences else None,
        day_pattern=pattern,
        semi_monthly_days=semi_monthly,
        custom_interval=interval,
        business_day_adjustment=BusinessDayAdjustment(
            raw.get("businessDayAdjustment") or "none"
        ),
        variable_percentage=variable,
        debt_id=raw.get("debtId"),
        debt_role=_debt_role(raw.get("debtRole")),
    )


def parse_instance(raw: dict[str, Any]) -> TransactionInstance:
    role = _debt_role(raw.get("debtRole"))
    return TransactionInstance(
        amount_cents=_parse_amount_cents(raw.get("amount", 0)),
        entry_type=_entry_type(raw.get("type")),
        description=str(raw.get("description") or ""),
        recurring_id=raw.get("recurringId"),
        modified_instance=bool(raw.get("modifiedInstance")),
        original_date=_optional_date(raw.get("originalDate")),
        debt_id=raw.get("debtId"),
        debt_role=role,
        snowball_month=raw.get("snowballMonth"),
        projected=bool(raw.get("snowballGenerated")),
    )


def link_legacy_instance(
    day: date, raw: dict[str, Any], templates: list[RecurringTemplate]
) -> Optional[TransactionInstance]:
    """Match an ``isRecurring`` instance to its template by its original shape."""
    amount = _parse_amount_cents(raw.get("originalAmount", raw.get("amount", 0)))
    entry_type = _entry_type(raw.get("originalType", raw.get("type")))
    description = str(raw.get("originalDescription", raw.get("description")) or "")
    for template in templates:
        if (
            template.amount_cents == amount
            and template.entry_type == entry_type
            and template.description == description
            and template.start_date <= day
        ):
            return TransactionInstance(
                amount_cents=_parse_amount_cents(raw.get("amount", 0)),
                entry_type=_entry_type(raw.get("type")),
                description=str(raw.get("description") or ""),
                recurring_id=template.id,
                modified_instance=bool(raw.get("modifiedRecurring")),
            )
    return None


def build_workspace(payload: dict[str, Any]) -> tuple[Workspace, LegacyImportReport]:
    if not isinstance(payload, dict):
        raise ValueError("Legacy export must be a JSON object")
    if "transactions" not in payload or "recurringTransactions" not in payload:
        raise ValueError("Legacy export is missing transactions or recurringTransactions")

    report = LegacyImportReport()
    workspace = Workspace()

    for raw in payload.get("recurringTransactions") or []:
        try:
            template = parse_template(raw)
        except (ValueError, TypeError) as exc:
            report.warnings.append(f"Skipped recurring transaction: {exc}")
            continue
        if template.entry_type == EntryType.balance:
            report.warnings.append(
                f"Skipped balance-type recurring transaction {template.id}"
            )
            continue
        if not isinstance(template.kind, RecurrenceKind):
            report.warnings.append(
                f"Unknown recurrence '{template.kind}' on {template.id}"
            )
        workspace.templates.append(template)
    report.templates = len(workspace.templates)

    ledger = Ledger()
    for day_text, items in sorted((payload.get("transactions") or {}).items()):
        try:
            day = _parse_date(day_text)
        except ValueError as exc:
            report.warnings.append(str(exc))
            continue
        for raw in items or []:
            try:
                if raw.get("isRecurring") and not raw.get("recurringId"):
                    instance = link_legacy_instance(day, raw, workspace.templates)
                    if instance is None:
                        report.unlinked_instances += 1
                        instance = parse_instance(raw)
                    else:
                        report.linked_instances += 1
                else:
                    instance = parse_instance(raw)
            except (ValueError, TypeError) as exc:
                report.warnings.append(f"Skipped entry on {day_text}: {exc}")
                continue
            existing = ledger.entries.get(day, [])
            if instance.entry_type == EntryType.balance and any(
                item.entry_type == EntryType.balance for item in existing
            ):
                report.warnings.append(f"Dropped second balance entry on {day_text}")
                continue
            if instance.recurring_id and any(
                item.recurring_id == instance.recurring_id for item in existing
            ):
                report.warnings.append(
                    f"Dropped duplicate entry for {instance.recurring_id} on {day_text}"
                )
                continue
            ledger.append(day, instance)
            report.transactions += 1
    if report.unlinked_instances:
        report.warnings.append(
            f"Kept {report.unlinked_instances} recurring entries without a matching "
            "template as one-off entries"
        )

    for day_text, ids in (payload.get("skippedTransactions") or {}).items():
        try:
            day = _parse_date(day_text)
        except ValueError as exc:
            report.warnings.append(str(exc))
            continue
        for recurring_id in ids or []:
            ledger.set_skipped(day, str(recurring_id), True)
            report.skips += 1
    workspace.ledger = ledger

    for raw in payload.get("debts") or []:
        try:
            workspace.debts.append(
                Debt(
                    id=str(raw.get("id") or new_id()),
                    name=str(raw.get("name") or "Debt"),
                    balance_cents=_parse_amount_cents(raw.get("balance", 0)),
                    min_payment_cents=_parse_amount_cents(raw.get("minPayment", 0)),
                    interest_rate=float(raw.get("interestRate") or 0),
                    due_day=min(max(int(raw.get("dueDay") or 1), 1), 31),
                    min_template_id=raw.get("minRecurringId"),
                )
            )
        except (ValueError, TypeError) as exc:
            report.warnings.append(f"Skipped debt: {exc}")
    report.debts = len(workspace.debts)

    for raw in payload.get("cashInfusions") or []:
        try:
            workspace.infusions.append(
                CashInfusion(
                    id=str(raw.get("id") or new_id()),
                    name=str(raw.get("name") or "Infusion"),
                    amount_cents=_parse_amount_cents(raw.get("amount", 0)),
                    date=_parse_date(raw.get("date")),
                    target_debt_id=raw.get("targetDebtId"),
                )
            )
        except (ValueError, TypeError) as exc:
            report.warnings.append(f"Skipped cash infusion: {exc}")
    report.infusions = len(workspace.infusions)

    settings = payload.get("debtSnowballSettings") or {}
    try:
        workspace.settings = SnowballSettings(
            base_extra_cents=_parse_amount_cents(settings.get("extraPayment", 0)),
            auto_generate=bool(settings.get("autoGenerate")),
        )
    except ValueError as exc:
        report.warnings.append(f"Ignored snowball settings: {exc}")
    return workspace, report


class LegacyImportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.store = WorkspaceStore(session, user_id)

    def preview(self, payload: dict[str, Any]) -> LegacyImportReport:
        _, report = build_workspace(payload)
        return report

    def commit(self, payload: dict[str, Any], *, today: Optional[date] = None) -> LegacyImportReport:
        """Replace the stored workspace with the imported one."""
        workspace, report = build_workspace(payload)
        sync_minimum_templates(workspace, today=today)
        refresh_balances(workspace)
        self.store.save(workspace)
        self.session.commit()
        logger.info(
            f"legacy_import: templates={report.templates} transactions={report.transactions} "
            f"debts={report.debts} linked={report.linked_instances} "
            f"months={len(workspace.monthly_balances)}"
        )
        return report
