from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from domain import BusinessDayAdjustment, DebtRole, EntryType, IntervalUnit


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class TemplateRecord(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Free text so a template with an unknown kind can still be loaded and
    # reported instead of breaking the whole workspace.
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    max_occurrences: Mapped[Optional[int]] = mapped_column(Integer)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(SAEnum(EntryType), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    day_pattern_ordinal: Mapped[Optional[int]] = mapped_column(Integer)
    day_pattern_weekday: Mapped[Optional[int]] = mapped_column(Integer)
    semi_monthly_first: Mapped[Optional[int]] = mapped_column(Integer)
    semi_monthly_second: Mapped[Optional[int]] = mapped_column(Integer)
    custom_interval_value: Mapped[Optional[int]] = mapped_column(Integer)
    custom_interval_unit: Mapped[Optional[IntervalUnit]] = mapped_column(
        SAEnum(IntervalUnit)
    )
    business_day_adjustment: Mapped[BusinessDayAdjustment] = mapped_column(
        SAEnum(BusinessDayAdjustment),
        nullable=False,
        default=BusinessDayAdjustment.none,
    )
    variable_percentage: Mapped[Optional[float]] = mapped_column(Float)
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)
    debt_id: Mapped[Optional[str]] = mapped_column(String(64))
    debt_role: Mapped[Optional[DebtRole]] = mapped_column(SAEnum(DebtRole))

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        Index("ix_templates_user_debt", "user_id", "debt_id"),
    )


class TransactionRecord(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # order within the day; balance resets depend on it
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(SAEnum(EntryType), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recurring_id: Mapped[Optional[str]] = mapped_column(String(64))
    modified_instance: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    original_date: Mapped[Optional[date]] = mapped_column(Date)
    debt_id: Mapped[Optional[str]] = mapped_column(String(64))
    debt_role: Mapped[Optional[DebtRole]] = mapped_column(SAEnum(DebtRole))
    snowball_month: Mapped[Optional[str]] = mapped_column(String(7))
    projected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "date", "recurring_id", name="uq_entry_date_recurring"
        ),
        Index("ix_entries_user_date", "user_id", "date", "position"),
        Index("ix_entries_user_debt", "user_id", "debt_id"),
        CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
    )


class SkipRecord(Base, TimestampMixin):
    __tablename__ = "skipped_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    recurring_id: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "date", "recurring_id", name="uq_skip_date_recurring"),
    )


class DebtRecord(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    min_payment_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    schedule_json: Mapped[Optional[str]] = mapped_column(Text)
    min_template_id: Mapped[Optional[str]] = mapped_column(String(64))
    payoff_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_debt_balance_positive"),
        CheckConstraint("min_payment_cents >= 0", name="ck_debt_min_payment_positive"),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_debt_due_day_range"),
    )


class InfusionRecord(Base, TimestampMixin):
    __tablename__ = "cash_infusions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    target_debt_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_infusion_amount_positive"),
    )


class SnowballSettingsRecord(Base, TimestampMixin):
    __tablename__ = "snowball_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1, unique=True)
    base_extra_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_generate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class MonthlyBalanceRecord(Base, TimestampMixin):
    __tablename__ = "monthly_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_balance_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    starting_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ending_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
