from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from domain import (
    BusinessDayAdjustment,
    EntryType,
    IntervalUnit,
    RecurrenceKind,
)


class DayPatternIn(BaseModel):
    ordinal: int = Field(..., ge=-5, le=5)
    weekday: int = Field(..., ge=0, le=6)

    @field_validator("ordinal")
    @classmethod
    def ordinal_not_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("ordinal must be 1..5 or negative for 'last'")
        return value


class CustomIntervalIn(BaseModel):
    value: int = Field(..., ge=1)
    unit: IntervalUnit


class ScheduleIn(BaseModel):
    kind: RecurrenceKind = RecurrenceKind.monthly
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    day_pattern: Optional[DayPatternIn] = None
    semi_monthly_days: Optional[tuple[int, int]] = None
    custom_interval: Optional[CustomIntervalIn] = None
    business_day_adjustment: BusinessDayAdjustment = BusinessDayAdjustment.none

    @field_validator("semi_monthly_days")
    @classmethod
    def semi_monthly_range(cls, value: Optional[tuple[int, int]]):
        if value is not None and any(not 1 <= day <= 31 for day in value):
            raise ValueError("semi-monthly days must be between 1 and 31")
        return value

    @model_validator(mode="after")
    def check_shape(self):
        if self.kind == RecurrenceKind.custom and self.custom_interval is None:
            raise ValueError("custom recurrence requires custom_interval")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class TemplateIn(ScheduleIn):
    amount_cents: int = Field(..., ge=0)
    entry_type: EntryType
    description: str = Field(default="", max_length=200)
    variable_percentage: Optional[float] = Field(
        default=None, ge=-100, le=1000, allow_inf_nan=False
    )

    @field_validator("entry_type")
    @classmethod
    def no_balance_templates(cls, value: EntryType) -> EntryType:
        if value == EntryType.balance:
            raise ValueError("recurring templates cannot be balance entries")
        return value


class TransactionIn(BaseModel):
    date: date
    amount_cents: int = Field(..., ge=0)
    entry_type: EntryType
    description: str = Field(default="", max_length=200)


class InstanceEditIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    entry_type: EntryType
    description: str = Field(default="", max_length=200)


class SkipIn(BaseModel):
    date: date
    recurring_id: str = Field(..., min_length=1, max_length=64)
    skipped: Optional[bool] = None


class DebtIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    balance_cents: int = Field(..., ge=0)
    min_payment_cents: int = Field(..., ge=0)
    interest_rate: float = Field(default=0.0, ge=0, le=100, allow_inf_nan=False)
    due_day: int = Field(default=1, ge=1, le=31)
    start_date: Optional[date] = None
    schedule: Optional[ScheduleIn] = None


class InfusionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    date: date
    target_debt_id: Optional[str] = None


class SnowballSettingsIn(BaseModel):
    base_extra_cents: int = Field(default=0, ge=0)
    auto_generate: bool = False
