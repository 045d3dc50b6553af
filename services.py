from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from aggregation import BalanceCalculator, MonthlySummary
from config import get_settings
from domain import (
    BusinessDayAdjustment,
    CashInfusion,
    CustomInterval,
    DayPattern,
    Debt,
    DebtRole,
    EditScope,
    IntervalUnit,
    Ledger,
    MonthlyBalance,
    RecurringTemplate,
    Schedule,
    SnowballSettings,
    TransactionInstance,
    Workspace,
    new_id,
)
from ledger import (
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
from models import (
    DebtRecord,
    InfusionRecord,
    MonthlyBalanceRecord,
    SkipRecord,
    SnowballSettingsRecord,
    TemplateRecord,
    TransactionRecord,
)
from periods import MonthRef, Period, iter_months, local_today
from projection_sync import SyncResult, sync_projection_to_ledger
from recurrence import TemplateIssue
from schemas import (
    DebtIn,
    InfusionIn,
    InstanceEditIn,
    ScheduleIn,
    SkipIn,
    SnowballSettingsIn,
    TemplateIn,
    TransactionIn,
)
from snowball import (
    DebtSummary,
    Projection,
    debt_summaries,
    project_from_ledger,
    sync_minimum_templates,
)

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def schedule_to_json(schedule: Optional[Schedule]) -> Optional[str]:
    if schedule is None:
        return None
    payload: dict[str, object] = {
        "kind": str(getattr(schedule.kind, "value", schedule.kind)),
        "start_date": schedule.start_date.isoformat(),
        "end_date": schedule.end_date.isoformat() if schedule.end_date else None,
        "max_occurrences": schedule.max_occurrences,
        "business_day_adjustment": schedule.business_day_adjustment.value,
    }
    if schedule.day_pattern is not None:
        payload["day_pattern"] = [schedule.day_pattern.ordinal, schedule.day_pattern.weekday]
    if schedule.semi_monthly_days is not None:
        payload["semi_monthly_days"] = list(schedule.semi_monthly_days)
    if schedule.custom_interval is not None:
        payload["custom_interval"] = [
            schedule.custom_interval.value,
            schedule.custom_interval.unit.value,
        ]
    return json.dumps(payload, sort_keys=True)


def schedule_from_json(raw: Optional[str]) -> Optional[Schedule]:
    if not raw:
        return None
    data = json.loads(raw)
    pattern = data.get("day_pattern")
    days = data.get("semi_monthly_days")
    interval = data.get("custom_interval")
    return Schedule(
        kind=data["kind"],
        start_date=date.fromisoformat(data["start_date"]),
        end_date=date.fromisoformat(data["end_date"]) if data.get("end_date") else None,
        max_occurrences=data.get("max_occurrences"),
        day_pattern=DayPattern(pattern[0], pattern[1]) if pattern else None,
        semi_monthly_days=(days[0], days[1]) if days else None,
        custom_interval=CustomInterval(interval[0], IntervalUnit(interval[1]))
        if interval
        else None,
        business_day_adjustment=BusinessDayAdjustment(
            data.get("business_day_adjustment", "none")
        ),
    )


def schedule_from_input(data: ScheduleIn) -> Schedule:
    return Schedule(
        kind=data.kind,
        start_date=data.start_date,
        end_date=data.end_date,
        max_occurrences=data.max_occurrences,
        day_pattern=DayPattern(data.day_pattern.ordinal, data.day_pattern.weekday)
        if data.day_pattern
        else None,
        semi_monthly_days=data.semi_monthly_days,
        custom_interval=CustomInterval(data.custom_interval.value, data.custom_interval.unit)
        if data.custom_interval
        else None,
        business_day_adjustment=data.business_day_adjustment,
    )


def template_from_input(data: TemplateIn, template_id: Optional[str] = None) -> RecurringTemplate:
    schedule = schedule_from_input(data)
    return RecurringTemplate(
        id=template_id or new_id(),
        start_date=schedule.start_date,
        kind=schedule.kind,
        amount_cents=data.amount_cents,
        entry_type=data.entry_type,
        description=data.description,
        end_date=schedule.end_date,
        max_occurrences=schedule.max_occurrences,
        day_pattern=schedule.day_pattern,
        semi_monthly_days=schedule.semi_monthly_days,
        custom_interval=schedule.custom_interval,
        business_day_adjustment=schedule.business_day_adjustment,
        variable_percentage=data.variable_percentage,
    )


class WorkspaceStore:
    """Loads a user's rows into a ``Workspace`` and writes it back whole."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def load(self) -> Workspace:
        workspace = Workspace()

        for row in self.session.scalars(
            select(TemplateRecord)
            .where(TemplateRecord.user_id == self.user_id)
            .order_by(TemplateRecord.created_at, TemplateRecord.id)
        ):
            workspace.templates.append(self._template(row))

        entries: dict[date, list[TransactionInstance]] = {}
        for row in self.session.scalars(
            select(TransactionRecord)
            .where(TransactionRecord.user_id == self.user_id)
            .order_by(TransactionRecord.date, TransactionRecord.position, TransactionRecord.id)
        ):
            entries.setdefault(row.date, []).append(
                TransactionInstance(
                    amount_cents=row.amount_cents,
                    entry_type=row.entry_type,
                    description=row.description or "",
                    recurring_id=row.recurring_id,
                    modified_instance=row.modified_instance,
                    original_date=row.original_date,
                    debt_id=row.debt_id,
                    debt_role=row.debt_role,
                    snowball_month=row.snowball_month,
                    projected=row.projected,
                )
            )
        skips: dict[date, set[str]] = {}
        for row in self.session.scalars(
            select(SkipRecord).where(SkipRecord.user_id == self.user_id)
        ):
            skips.setdefault(row.date, set()).add(row.recurring_id)
        workspace.ledger = Ledger(entries, skips)

        for row in self.session.scalars(
            select(DebtRecord)
            .where(DebtRecord.user_id == self.user_id)
            .order_by(DebtRecord.created_at, DebtRecord.id)
        ):
            workspace.debts.append(
                Debt(
                    id=row.id,
                    name=row.name,
                    balance_cents=row.balance_cents,
                    min_payment_cents=row.min_payment_cents,
                    interest_rate=row.interest_rate,
                    due_day=row.due_day,
                    start_date=row.start_date,
                    schedule=schedule_from_json(row.schedule_json),
                    min_template_id=row.min_template_id,
                    payoff_date=row.payoff_date,
                )
            )
        for row in self.session.scalars(
            select(InfusionRecord)
            .where(InfusionRecord.user_id == self.user_id)
            .order_by(InfusionRecord.date, InfusionRecord.id)
        ):
            workspace.infusions.append(
                CashInfusion(
                    id=row.id,
                    name=row.name,
                    amount_cents=row.amount_cents,
                    date=row.date,
                    target_debt_id=row.target_debt_id,
                )
            )

        settings = self.session.scalar(
            select(SnowballSettingsRecord).where(
                SnowballSettingsRecord.user_id == self.user_id
            )
        )
        if settings:
            workspace.settings = SnowballSettings(
                base_extra_cents=settings.base_extra_cents,
                auto_generate=settings.auto_generate,
            )
        for row in self.session.scalars(
            select(MonthlyBalanceRecord).where(MonthlyBalanceRecord.user_id == self.user_id)
        ):
            workspace.monthly_balances[MonthRef(row.year, row.month).key] = MonthlyBalance(
                starting_cents=row.starting_cents, ending_cents=row.ending_cents
            )
        return workspace

    @staticmethod
    def _template(row: TemplateRecord) -> RecurringTemplate:
        pattern = None
        if row.day_pattern_ordinal is not None and row.day_pattern_weekday is not None:
            pattern = DayPattern(row.day_pattern_ordinal, row.day_pattern_weekday)
        days = None
        if row.semi_monthly_first is not None and row.semi_monthly_second is not None:
            days = (row.semi_monthly_first, row.semi_monthly_second)
        interval = None
        if row.custom_interval_value is not None and row.custom_interval_unit is not None:
            interval = CustomInterval(row.custom_interval_value, row.custom_interval_unit)
        return RecurringTemplate(
            id=row.id,
            start_date=row.start_date,
            kind=row.kind,
            amount_cents=row.amount_cents,
            entry_type=row.entry_type,
            description=row.description or "",
            end_date=row.end_date,
            max_occurrences=row.max_occurrences,
            day_pattern=pattern,
            semi_monthly_days=days,
            custom_interval=interval,
            business_day_adjustment=row.business_day_adjustment,
            variable_percentage=row.variable_percentage,
            anchor_day=row.anchor_day,
            debt_id=row.debt_id,
            debt_role=row.debt_role,
        )

    def save(self, workspace: Workspace) -> None:
        for model in (
            TemplateRecord,
            TransactionRecord,
            SkipRecord,
            DebtRecord,
            InfusionRecord,
            MonthlyBalanceRecord,
        ):
            self.session.execute(delete(model).where(model.user_id == self.user_id))
        self.session.flush()

        for template in workspace.templates:
            self.session.add(
                TemplateRecord(
                    id=template.id,
                    user_id=self.user_id,
                    kind=str(getattr(template.kind, "value", template.kind)),
                    start_date=template.start_date,
                    end_date=template.end_date,
                    max_occurrences=template.max_occurrences,
                    amount_cents=template.amount_cents,
                    entry_type=template.entry_type,
                    description=template.description,
                    day_pattern_ordinal=template.day_pattern.ordinal
                    if template.day_pattern
                    else None,
                    day_pattern_weekday=template.day_pattern.weekday
                    if template.day_pattern
                    else None,
                    semi_monthly_first=template.semi_monthly_days[0]
                    if template.semi_monthly_days
                    else None,
                    semi_monthly_second=template.semi_monthly_days[1]
                    if template.semi_monthly_days
                    else None,
                    custom_interval_value=template.custom_interval.value
                    if template.custom_interval
                    else None,
                    custom_interval_unit=template.custom_interval.unit
                    if template.custom_interval
                    else None,
                    business_day_adjustment=template.business_day_adjustment,
                    variable_percentage=template.variable_percentage,
                    anchor_day=template.anchor_day,
                    debt_id=template.debt_id,
                    debt_role=template.debt_role,
                )
            )
        for day in workspace.ledger.dates():
            for position, item in enumerate(workspace.ledger.entries[day]):
                self.session.add(
                    TransactionRecord(
                        user_id=self.user_id,
                        date=day,
                        position=position,
                        amount_cents=item.amount_cents,
                        entry_type=item.entry_type,
                        description=item.description,
                        recurring_id=item.recurring_id,
                        modified_instance=item.modified_instance,
                        original_date=item.original_date,
                        debt_id=item.debt_id,
                        debt_role=item.debt_role,
                        snowball_month=item.snowball_month,
                        projected=item.projected,
                    )
                )
        for day, recurring_ids in workspace.ledger.skips.items():
            for recurring_id in sorted(recurring_ids):
                self.session.add(
                    SkipRecord(user_id=self.user_id, date=day, recurring_id=recurring_id)
                )
        for debt in workspace.debts:
            self.session.add(
                DebtRecord(
                    id=debt.id,
                    user_id=self.user_id,
                    name=debt.name,
                    balance_cents=debt.balance_cents,
                    min_payment_cents=debt.min_payment_cents,
                    interest_rate=debt.interest_rate,
                    due_day=debt.due_day,
                    start_date=debt.start_date,
                    schedule_json=schedule_to_json(debt.schedule),
                    min_template_id=debt.min_template_id,
                    payoff_date=debt.payoff_date,
                )
            )
        for infusion in workspace.infusions:
            self.session.add(
                InfusionRecord(
                    id=infusion.id,
                    user_id=self.user_id,
                    name=infusion.name,
                    amount_cents=infusion.amount_cents,
                    date=infusion.date,
                    target_debt_id=infusion.target_debt_id,
                )
            )
        for key, balance in workspace.monthly_balances.items():
            ref = MonthRef.parse_key(key)
            self.session.add(
                MonthlyBalanceRecord(
                    user_id=self.user_id,
                    year=ref.year,
                    month=ref.month,
                    starting_cents=balance.starting_cents,
                    ending_cents=balance.ending_cents,
                )
            )

        settings = self.session.scalar(
            select(SnowballSettingsRecord).where(
                SnowballSettingsRecord.user_id == self.user_id
            )
        )
        if settings is None:
            settings = SnowballSettingsRecord(user_id=self.user_id)
            self.session.add(settings)
        settings.base_extra_cents = workspace.settings.base_extra_cents
        settings.auto_generate = workspace.settings.auto_generate
        self.session.flush()


def refresh_balances(workspace: Workspace, anchor: Optional[date] = None) -> BalanceCalculator:
    calculator = BalanceCalculator(workspace.ledger)
    workspace.monthly_balances = calculator.recompute_monthly_balances(anchor)
    return calculator


def rebuild_monthly_balances(session: Session, user_id: Optional[int] = None) -> int:
    store = WorkspaceStore(session, user_id)
    workspace = store.load()
    refresh_balances(workspace)
    store.save(workspace)
    session.commit()
    return len(workspace.monthly_balances)


def materialize_months(
    workspace: Workspace, target: MonthRef, *, today: Optional[date] = None
) -> list[TemplateIssue]:
    """Expand every template for the lookback window ending at ``target``."""
    today = today or local_today()
    sync_minimum_templates(workspace, today=today)
    if not workspace.templates:
        return []
    lookback = get_settings().expansion_lookback_months
    earliest = min(MonthRef.of(template.start_date) for template in workspace.templates)
    first = max(earliest, target.shift(-lookback))
    issues: dict[str, TemplateIssue] = {}
    for month in iter_months(first, target):
        expansion = apply_recurring_month(
            workspace.ledger, workspace.templates, month.year, month.month
        )
        for issue in expansion.issues:
            issues.setdefault(issue.template_id, issue)
    return list(issues.values())


def run_snowball_sync(
    workspace: Workspace,
    year: int,
    month: int,
    *,
    force: bool = False,
    today: Optional[date] = None,
) -> Optional[SyncResult]:
    """Sync the projection into one month when auto-generation (or force) allows."""
    if not (workspace.settings.auto_generate or force):
        return None
    if not workspace.debts:
        return None
    today = today or local_today()
    current = MonthRef.of(today)
    projection = project_from_ledger(workspace, current.year, current.month)
    return sync_projection_to_ledger(workspace, projection, year, month, today=today)


@dataclass
class MonthView:
    month: MonthRef
    calculator: BalanceCalculator
    ledger: Ledger
    issues: list[TemplateIssue] = field(default_factory=list)
    syncs: list[SyncResult] = field(default_factory=list)


class CalendarService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.store = WorkspaceStore(session, user_id)

    def month_view(self, year: int, month: int, today: Optional[date] = None) -> MonthView:
        today = today or local_today()
        target = MonthRef(year, month)
        workspace = self.store.load()
        issues = materialize_months(workspace, target, today=today)
        syncs = []
        current = MonthRef.of(today)
        if workspace.settings.auto_generate and workspace.debts and target >= current:
            projection = project_from_ledger(workspace, current.year, current.month)
            for ref in iter_months(current, target):
                syncs.append(
                    sync_projection_to_ledger(
                        workspace, projection, ref.year, ref.month, today=today
                    )
                )
        calculator = refresh_balances(workspace, anchor=target.first_day)
        self.store.save(workspace)
        self.session.commit()
        return MonthView(
            month=target,
            calculator=calculator,
            ledger=workspace.ledger,
            issues=issues,
            syncs=syncs,
        )

    def day_view(self, day: date) -> tuple[Ledger, BalanceCalculator]:
        view = self.month_view(day.year, day.month)
        return view.ledger, view.calculator

    def period_summaries(self, period: Period) -> list[MonthlySummary]:
        months = period.months()
        view = self.month_view(months[-1].year, months[-1].month)
        return [view.calculator.monthly_summary(ref.year, ref.month) for ref in months]


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.store = WorkspaceStore(session, user_id)

    def _commit(self, workspace: Workspace, anchor: date) -> None:
        refresh_balances(workspace, anchor)
        self.store.save(workspace)
        self.session.commit()

    def create(self, data: TransactionIn) -> TransactionInstance:
        workspace = self.store.load()
        instance = add_instance(
            workspace.ledger,
            data.date,
            TransactionInstance(
                amount_cents=data.amount_cents,
                entry_type=data.entry_type,
                description=data.description,
            ),
        )
        self._commit(workspace, data.date)
        return instance

    def update(
        self, day: date, index: int, data: InstanceEditIn, scope: EditScope
    ) -> TransactionInstance:
        workspace = self.store.load()
        instance = update_instance(
            workspace,
            day,
            index,
            InstanceEdit(data.amount_cents, data.entry_type, data.description),
            scope,
        )
        self._commit(workspace, day)
        return instance

    def delete(self, day: date, index: int, scope: EditScope) -> None:
        workspace = self.store.load()
        delete_instance(workspace, day, index, scope, today=local_today())
        self._commit(workspace, day)

    def set_skip(self, data: SkipIn) -> bool:
        workspace = self.store.load()
        skipped = toggle_skip(workspace.ledger, data.date, data.recurring_id, data.skipped)
        self._commit(workspace, data.date)
        return skipped


class TemplateService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.store = WorkspaceStore(session, user_id)

    def list(self) -> list[RecurringTemplate]:
        return sorted(self.store.load().templates, key=lambda t: (t.start_date, t.id))

    def get(self, template_id: str) -> RecurringTemplate:
        return self.store.load().template(template_id)

    def create(self, data: TemplateIn) -> RecurringTemplate:
        workspace = self.store.load()
        template = add_template(workspace, template_from_input(data))
        materialize_months(workspace, MonthRef.of(local_today()))
        refresh_balances(workspace)
        self.store.save(workspace)
        self.session.commit()
        return template

    def update(self, template_id: str, data: TemplateIn) -> RecurringTemplate:
        workspace = self.store.load()
        current = workspace.template(template_id)
        if current.debt_role == DebtRole.minimum:
            raise ValueError("Debt payment templates are managed by their debt")
        updated = template_from_input(data, template_id)
        if (updated.start_date, updated.kind) == (current.start_date, current.kind):
            updated.anchor_day = current.anchor_day
        template = update_template(workspace, updated)
        refresh_balances(workspace)
        self.store.save(workspace)
        self.session.commit()
        return template

    def delete(self, template_id: str) -> int:
        workspace = self.store.load()
        removed = delete_template(workspace, template_id, local_today())
        refresh_balances(workspace)
        self.store.save(workspace)
        self.session.commit()
        return removed


class DebtService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.store = WorkspaceStore(session, user_id)

    def _commit(self, workspace: Workspace) -> None:
        refresh_balances(workspace)
        self.store.save(workspace)
        self.session.commit()

    def summaries(self, cutoff: Optional[date] = None) -> list[DebtSummary]:
        workspace = self.store.load()
        return debt_summaries(workspace.ledger, workspace.debts, cutoff)

    def _apply(self, debt: Debt, data: DebtIn) -> None:
        debt.name = data.name.strip()
        debt.balance_cents = data.balance_cents
        debt.min_payment_cents = data.min_payment_cents
        debt.interest_rate = data.interest_rate
        debt.due_day = data.due_day
        debt.start_date = data.start_date
        debt.schedule = schedule_from_input(data.schedule) if data.schedule else None
        # balances changed, so any recorded payoff is stale
        debt.payoff_date = None

    def create(self, data: DebtIn) -> Debt:
        workspace = self.store.load()
        debt = Debt(id=new_id(), name="", balance_cents=0, min_payment_cents=0)
        self._apply(debt, data)
        workspace.debts.append(debt)
        materialize_months(workspace, MonthRef.of(local_today()))
        self._commit(workspace)
        logger.info(f"debt_created: id={debt.id}")
        return debt

    def update(self, debt_id: str, data: DebtIn) -> Debt:
        workspace = self.store.load()
        debt = workspace.debt(debt_id)
        self._apply(debt, data)
        materialize_months(workspace, MonthRef.of(local_today()))
        self._commit(workspace)
        return debt

    def delete(self, debt_id: str) -> None:
        workspace = self.store.load()
        debt = workspace.debt(debt_id)
        workspace.debts.remove(debt)
        today = local_today()
        sync_minimum_templates(workspace, today=today)
        for day in workspace.ledger.dates():
            if day >= today:
                workspace.ledger.retain(
                    day,
                    lambda item: not (
                        item.debt_id == debt_id and item.debt_role == DebtRole.snowball
                    ),
                )
        workspace.infusions = [
            infusion
            for infusion in workspace.infusions
            if infusion.target_debt_id != debt_id
        ]
        self._commit(workspace)
        logger.info(f"debt_deleted: id={debt_id}")

    def list_infusions(self) -> list[CashInfusion]:
        return self.store.load().infusions

    def add_infusion(self, data: InfusionIn) -> CashInfusion:
        workspace = self.store.load()
        if data.target_debt_id:
            workspace.debt(data.target_debt_id)
        infusion = CashInfusion(
            id=new_id(),
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            date=data.date,
            target_debt_id=data.target_debt_id,
        )
        workspace.infusions.append(infusion)
        self._commit(workspace)
        return infusion

    def delete_infusion(self, infusion_id: str) -> None:
        workspace = self.store.load()
        remaining = [item for item in workspace.infusions if item.id != infusion_id]
        if len(remaining) == len(workspace.infusions):
            raise ValueError("Infusion not found")
        workspace.infusions = remaining
        self._commit(workspace)

    def get_settings(self) -> SnowballSettings:
        return self.store.load().settings

    def update_settings(self, data: SnowballSettingsIn) -> SnowballSettings:
        workspace = self.store.load()
        workspace.settings = SnowballSettings(
            base_extra_cents=data.base_extra_cents, auto_generate=data.auto_generate
        )
        if workspace.settings.auto_generate:
            today = local_today()
            current = MonthRef.of(today)
            materialize_months(workspace, current, today=today)
            run_snowball_sync(workspace, current.year, current.month, today=today)
        self._commit(workspace)
        return workspace.settings

    def projection(
        self, year: int, month: int, include_extra: bool = True
    ) -> tuple[Projection, list[Debt]]:
        workspace = self.store.load().snapshot()
        return project_from_ledger(workspace, year, month, include_extra), workspace.debts

    def sync(
        self, year: int, month: int, *, force: bool = False, today: Optional[date] = None
    ) -> Optional[SyncResult]:
        today = today or local_today()
        workspace = self.store.load()
        materialize_months(workspace, MonthRef(year, month), today=today)
        result = run_snowball_sync(workspace, year, month, force=force, today=today)
        self._commit(workspace)
        return result
