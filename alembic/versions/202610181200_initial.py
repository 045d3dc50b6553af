"""initial cash-flow calendar schema

Revision ID: 202610181200
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610181200"
down_revision = None
branch_labels = None
depends_on = None


ENTRY_TYPE = sa.Enum("income", "expense", "balance", name="entrytype")
DEBT_ROLE = sa.Enum("minimum", "snowball", name="debtrole")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("max_occurrences", sa.Integer()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("day_pattern_ordinal", sa.Integer()),
        sa.Column("day_pattern_weekday", sa.Integer()),
        sa.Column("semi_monthly_first", sa.Integer()),
        sa.Column("semi_monthly_second", sa.Integer()),
        sa.Column("custom_interval_value", sa.Integer()),
        sa.Column(
            "custom_interval_unit",
            sa.Enum("days", "weeks", "months", name="intervalunit"),
        ),
        sa.Column(
            "business_day_adjustment",
            sa.Enum("none", "previous", "next", "nearest", name="businessdayadjustment"),
            nullable=False,
            server_default="none",
        ),
        sa.Column("variable_percentage", sa.Float()),
        sa.Column("anchor_day", sa.Integer()),
        sa.Column("debt_id", sa.String(length=64)),
        sa.Column("debt_role", DEBT_ROLE),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
    )
    op.create_index(
        "ix_templates_user_debt", "recurring_templates", ["user_id", "debt_id"]
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("recurring_id", sa.String(length=64)),
        sa.Column(
            "modified_instance", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("original_date", sa.Date()),
        sa.Column("debt_id", sa.String(length=64)),
        sa.Column("debt_role", DEBT_ROLE),
        sa.Column("snowball_month", sa.String(length=7)),
        sa.Column("projected", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "date", "recurring_id", name="uq_entry_date_recurring"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
    )
    op.create_index(
        "ix_entries_user_date", "ledger_entries", ["user_id", "date", "position"]
    )
    op.create_index("ix_entries_user_debt", "ledger_entries", ["user_id", "debt_id"])

    op.create_table(
        "skipped_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("recurring_id", sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "date", "recurring_id", name="uq_skip_date_recurring"
        ),
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("min_payment_cents", sa.Integer(), nullable=False),
        sa.Column("interest_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("due_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_date", sa.Date()),
        sa.Column("schedule_json", sa.Text()),
        sa.Column("min_template_id", sa.String(length=64)),
        sa.Column("payoff_date", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("balance_cents >= 0", name="ck_debt_balance_positive"),
        sa.CheckConstraint(
            "min_payment_cents >= 0", name="ck_debt_min_payment_positive"
        ),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_debt_due_day_range"),
    )

    op.create_table(
        "cash_infusions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("target_debt_id", sa.String(length=64)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_infusion_amount_positive"),
    )

    op.create_table(
        "snowball_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True, default=1),
        sa.Column("base_extra_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "auto_generate", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )

    op.create_table(
        "monthly_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("starting_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ending_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_balance_user_month"),
    )


def downgrade():
    op.drop_table("monthly_balances")
    op.drop_table("snowball_settings")
    op.drop_table("cash_infusions")
    op.drop_table("debts")
    op.drop_table("skipped_occurrences")
    op.drop_index("ix_entries_user_debt", table_name="ledger_entries")
    op.drop_index("ix_entries_user_date", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_templates_user_debt", table_name="recurring_templates")
    op.drop_table("recurring_templates")
