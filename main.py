import logging
from datetime import date
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from aggregation import BalanceCalculator, DailyTotals, MonthlySummary
from database import get_db
from domain import (
    CashInfusion,
    Debt,
    EditScope,
    Ledger,
    RecurringTemplate,
    SnowballSettings,
    TransactionInstance,
)
from legacy_import import LegacyImportService
from periods import MonthRef, Period, resolve_period
from projection_sync import describe
from scheduler import SchedulerManager
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
    rebuild_monthly_balances,
)
from snowball import DebtSummary, Projection

logger = logging.getLogger(__name__)

app = FastAPI(title="Cash-flow Calendar")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: ValueError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def month_ref(year: int, month: int) -> MonthRef:
    try:
        return MonthRef(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def instance_payload(
    ledger: Ledger, day: date, index: int, item: TransactionInstance
) -> dict[str, Any]:
    return {
        "date": day.isoformat(),
        "index": index,
        "amount_cents": item.amount_cents,
        "entry_type": item.entry_type.value,
        "description": item.description,
        "recurring_id": item.recurring_id,
        "modified_instance": item.modified_instance,
        "original_date": item.original_date.isoformat() if item.original_date else None,
        "skipped": ledger.is_skipped(day, item.recurring_id),
        "debt_id": item.debt_id,
        "debt_role": _value(item.debt_role),
        "snowball_month": item.snowball_month,
        "projected": item.projected,
    }


def totals_payload(totals: DailyTotals, closing_cents: Optional[int] = None) -> dict[str, Any]:
    payload = {
        "date": totals.day.isoformat(),
        "income_cents": totals.income_cents,
        "expense_cents": totals.expense_cents,
        "balance_cents": totals.balance_cents,
        "net_cents": totals.net_cents,
        "has_skipped": totals.has_skipped,
        "entry_count": totals.entry_count,
    }
    if closing_cents is not None:
        payload["closing_cents"] = closing_cents
    return payload


def summary_payload(summary: MonthlySummary) -> dict[str, Any]:
    return {
        "month": summary.month.key,
        "starting_cents": summary.starting_cents,
        "ending_cents": summary.ending_cents,
        "income_cents": summary.income_cents,
        "expense_cents": summary.expense_cents,
        "net_cents": summary.net_cents,
    }


def template_payload(template: RecurringTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "kind": _value(template.kind),
        "start_date": template.start_date.isoformat(),
        "end_date": template.end_date.isoformat() if template.end_date else None,
        "max_occurrences": template.max_occurrences,
        "amount_cents": template.amount_cents,
        "entry_type": template.entry_type.value,
        "description": template.description,
        "day_pattern": {
            "ordinal": template.day_pattern.ordinal,
            "weekday": template.day_pattern.weekday,
        }
        if template.day_pattern
        else None,
        "semi_monthly_days": list(template.semi_monthly_days)
        if template.semi_monthly_days
        else None,
        "custom_interval": {
            "value": template.custom_interval.value,
            "unit": template.custom_interval.unit.value,
        }
        if template.custom_interval
        else None,
        "business_day_adjustment": template.business_day_adjustment.value,
        "variable_percentage": template.variable_percentage,
        "anchor_day": template.anchor_day,
        "debt_id": template.debt_id,
        "debt_role": _value(template.debt_role),
    }


def debt_payload(debt: Debt, summary: Optional[DebtSummary] = None) -> dict[str, Any]:
    payload = {
        "id": debt.id,
        "name": debt.name,
        "balance_cents": debt.balance_cents,
        "min_payment_cents": debt.min_payment_cents,
        "interest_rate": debt.interest_rate,
        "due_day": debt.due_day,
        "start_date": debt.start_date.isoformat() if debt.start_date else None,
        "min_template_id": debt.min_template_id,
        "payoff_date": debt.payoff_date.isoformat() if debt.payoff_date else None,
    }
    if summary is not None:
        payload["paid_cents"] = summary.paid_cents
        payload["remaining_cents"] = summary.remaining_cents
    return payload


def infusion_payload(infusion: CashInfusion) -> dict[str, Any]:
    return {
        "id": infusion.id,
        "name": infusion.name,
        "amount_cents": infusion.amount_cents,
        "date": infusion.date.isoformat(),
        "target_debt_id": infusion.target_debt_id,
    }


def settings_payload(settings: SnowballSettings) -> dict[str, Any]:
    return {
        "base_extra_cents": settings.base_extra_cents,
        "auto_generate": settings.auto_generate,
    }


def projection_payload(projection: Projection, debts: list[Debt]) -> dict[str, Any]:
    names = {debt.id: debt.name for debt in debts}
    return {
        "start": projection.start.key,
        "include_extra": projection.include_extra,
        "horizon_exceeded": projection.horizon_exceeded,
        "issues": projection.issues,
        "payoff_months": {
            debt_id: ref.key if ref else None
            for debt_id, ref in projection.payoff_months.items()
        },
        "months": [
            {
                "month": month.month.key,
                "target_debt_id": month.target_debt_id,
                "target_name": names.get(month.target_debt_id or ""),
                "pool_cents": month.pool_cents,
                "unused_pool_cents": month.unused_pool_cents,
                "pool": {
                    "base_extra_cents": month.pool.base_extra_cents,
                    "infusion_cents": month.pool.infusion_cents,
                    "targeted_remainder_cents": month.pool.targeted_remainder_cents,
                    "in_month_rollover_cents": month.pool.in_month_rollover_cents,
                    "matured_rollover_cents": month.pool.matured_rollover_cents,
                },
                "debts": [
                    {
                        "debt_id": row.debt_id,
                        "starting_cents": row.starting_cents,
                        "interest_cents": row.interest_cents,
                        "scheduled_minimum_cents": row.scheduled_minimum_cents,
                        "minimum_cents": row.minimum_cents,
                        "infusion_cents": row.infusion_cents,
                        "extra_cents": row.extra_cents,
                        "ending_cents": row.ending_cents,
                    }
                    for row in month.debts.values()
                ],
            }
            for month in projection.months
        ],
    }


def day_payload(ledger: Ledger, calculator: BalanceCalculator, day: date) -> dict[str, Any]:
    closing = calculator.day_balances(MonthRef.of(day))[day]
    return {
        "totals": totals_payload(calculator.daily_totals(day), closing),
        "items": [
            instance_payload(ledger, day, index, item)
            for index, item in enumerate(ledger.instances(day))
        ],
    }


@app.get("/api/calendar/{year}/{month}")
def api_calendar(year: int, month: int, db: Session = Depends(get_db)):
    ref = month_ref(year, month)
    view = CalendarService(db).month_view(ref.year, ref.month)
    closing = view.calculator.day_balances(ref)
    return {
        "summary": summary_payload(view.calculator.monthly_summary(ref.year, ref.month)),
        "days": [
            totals_payload(view.calculator.daily_totals(day), closing[day])
            for day in ref.days()
        ],
        "issues": [
            {"template_id": issue.template_id, "message": issue.message}
            for issue in view.issues
        ],
        "syncs": [describe(result) for result in view.syncs],
    }


@app.get("/api/days/{day}")
def api_day(day: date, db: Session = Depends(get_db)):
    ledger, calculator = CalendarService(db).day_view(day)
    return day_payload(ledger, calculator, day)


@app.get("/api/summary")
def api_summary(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    summaries = CalendarService(db).period_summaries(period)
    return {
        "period": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "months": [summary_payload(summary) for summary in summaries],
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        instance = TransactionService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "date": data.date.isoformat(),
        "amount_cents": instance.amount_cents,
        "entry_type": instance.entry_type.value,
        "description": instance.description,
    }


@app.put("/api/transactions/{day}/{index}")
def api_update_transaction(
    day: date,
    index: int,
    data: InstanceEditIn,
    scope: EditScope = EditScope.this,
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db).update(day, index, data, scope)
    except ValueError as exc:
        raise http_error(exc) from exc
    ledger, calculator = CalendarService(db).day_view(day)
    return day_payload(ledger, calculator, day)


@app.delete("/api/transactions/{day}/{index}", status_code=204)
def api_delete_transaction(
    day: date,
    index: int,
    scope: EditScope = EditScope.this,
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db).delete(day, index, scope)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/skips")
def api_skip(data: SkipIn, db: Session = Depends(get_db)):
    try:
        skipped = TransactionService(db).set_skip(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "date": data.date.isoformat(),
        "recurring_id": data.recurring_id,
        "skipped": skipped,
    }


@app.get("/api/templates")
def api_templates(db: Session = Depends(get_db)):
    return [template_payload(template) for template in TemplateService(db).list()]


@app.post("/api/templates", status_code=201)
def api_create_template(data: TemplateIn, db: Session = Depends(get_db)):
    try:
        template = TemplateService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return template_payload(template)


@app.put("/api/templates/{template_id}")
def api_update_template(template_id: str, data: TemplateIn, db: Session = Depends(get_db)):
    try:
        template = TemplateService(db).update(template_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return template_payload(template)


@app.delete("/api/templates/{template_id}")
def api_delete_template(template_id: str, db: Session = Depends(get_db)):
    try:
        removed = TemplateService(db).delete(template_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"removed_instances": removed}


@app.get("/api/debts")
def api_debts(db: Session = Depends(get_db)):
    return [debt_payload(summary.debt, summary) for summary in DebtService(db).summaries()]


@app.post("/api/debts", status_code=201)
def api_create_debt(data: DebtIn, db: Session = Depends(get_db)):
    try:
        debt = DebtService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return debt_payload(debt)


@app.put("/api/debts/{debt_id}")
def api_update_debt(debt_id: str, data: DebtIn, db: Session = Depends(get_db)):
    try:
        debt = DebtService(db).update(debt_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return debt_payload(debt)


@app.delete("/api/debts/{debt_id}", status_code=204)
def api_delete_debt(debt_id: str, db: Session = Depends(get_db)):
    try:
        DebtService(db).delete(debt_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/infusions")
def api_infusions(db: Session = Depends(get_db)):
    return [infusion_payload(item) for item in DebtService(db).list_infusions()]


@app.post("/api/infusions", status_code=201)
def api_create_infusion(data: InfusionIn, db: Session = Depends(get_db)):
    try:
        infusion = DebtService(db).add_infusion(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return infusion_payload(infusion)


@app.delete("/api/infusions/{infusion_id}", status_code=204)
def api_delete_infusion(infusion_id: str, db: Session = Depends(get_db)):
    try:
        DebtService(db).delete_infusion(infusion_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/snowball/settings")
def api_snowball_settings(db: Session = Depends(get_db)):
    return settings_payload(DebtService(db).get_settings())


@app.put("/api/snowball/settings")
def api_update_snowball_settings(data: SnowballSettingsIn, db: Session = Depends(get_db)):
    return settings_payload(DebtService(db).update_settings(data))


@app.get("/api/snowball/projection")
def api_snowball_projection(
    year: int, month: int, include_extra: bool = True, db: Session = Depends(get_db)
):
    ref = month_ref(year, month)
    projection, debts = DebtService(db).projection(ref.year, ref.month, include_extra)
    return projection_payload(projection, debts)


@app.post("/api/snowball/sync")
def api_snowball_sync(
    year: int, month: int, force: bool = False, db: Session = Depends(get_db)
):
    ref = month_ref(year, month)
    result = DebtService(db).sync(ref.year, ref.month, force=force)
    return describe(result)


@app.post("/api/import/legacy")
def api_import_legacy(
    payload: dict[str, Any] = Body(...),
    dry_run: bool = False,
    db: Session = Depends(get_db),
):
    service = LegacyImportService(db)
    try:
        report = service.preview(payload) if dry_run else service.commit(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"dry_run": dry_run, **report.as_dict()}


@app.post("/api/admin/rebuild-balances")
def api_rebuild_balances(db: Session = Depends(get_db)):
    months = rebuild_monthly_balances(db)
    logger.info(f"Rebuilt monthly balances for {months} months")
    return {"months": months}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
