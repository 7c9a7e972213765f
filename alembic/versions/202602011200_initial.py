"""recurring expenses and expense instances

Revision ID: 202602011200
Revises:
Create Date: 2026-02-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202602011200"
down_revision = None
branch_labels = None
depends_on = None

EXPENSE_CATEGORIES = (
    "Hosting & Infrastructure",
    "Software Subscriptions",
    "Marketing & Ads",
    "Equipment & Hardware",
    "Contractor Payments",
    "App Store Fees",
    "Office & Admin",
    "Other",
)


def upgrade():
    op.create_table(
        "recurring_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_original_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency_original",
            sa.String(length=3),
            nullable=False,
            server_default="GBP",
        ),
        sa.Column("amount_gbp_cents", sa.Integer(), nullable=False),
        sa.Column(
            "exchange_rate_micros",
            sa.Integer(),
            nullable=False,
            server_default="1000000",
        ),
        sa.Column("conversion_date", sa.DateTime()),
        sa.Column(
            "category",
            sa.Enum(*EXPENSE_CATEGORIES, name="expensecategory"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "duration_type",
            sa.Enum("indefinite", "months", "until_date", name="durationtype"),
            nullable=False,
            server_default="indefinite",
        ),
        sa.Column("duration_months", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_original_cents > 0", name="ck_recurring_amount_positive"
        ),
        sa.CheckConstraint(
            "duration_months IS NULL OR duration_months > 0",
            name="ck_recurring_duration_months_positive",
        ),
        sa.CheckConstraint(
            "CAST(strftime('%d', start_date) AS INTEGER) BETWEEN 1 AND 28",
            name="ck_recurring_start_day",
        ),
        sa.CheckConstraint(
            "(duration_type = 'indefinite'"
            " AND duration_months IS NULL AND end_date IS NULL)"
            " OR (duration_type = 'months'"
            " AND duration_months IS NOT NULL AND end_date IS NULL)"
            " OR (duration_type = 'until_date'"
            " AND end_date IS NOT NULL AND duration_months IS NULL)",
            name="ck_recurring_duration_fields",
        ),
    )
    op.create_index(
        "ix_recurring_expenses_user_active",
        "recurring_expenses",
        ["user_id", "is_active"],
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_original_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency_original",
            sa.String(length=3),
            nullable=False,
            server_default="GBP",
        ),
        sa.Column("amount_gbp_cents", sa.Integer(), nullable=False),
        sa.Column(
            "exchange_rate_micros",
            sa.Integer(),
            nullable=False,
            server_default="1000000",
        ),
        sa.Column("conversion_date", sa.DateTime()),
        sa.Column(
            "category",
            sa.Enum(*EXPENSE_CATEGORIES, name="expensecategory"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("month_key", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("one_off", "recurring", name="expensetype"),
            nullable=False,
        ),
        sa.Column(
            "recurring_expense_id",
            sa.Integer(),
            sa.ForeignKey("recurring_expenses.id"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "recurring_expense_id",
            "month_key",
            name="uq_expense_template_month",
        ),
        sa.CheckConstraint(
            "amount_original_cents > 0", name="ck_expense_amount_positive"
        ),
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])
    op.create_index(
        "ix_expenses_user_template_date",
        "expenses",
        ["user_id", "recurring_expense_id", "date"],
    )


def downgrade():
    op.drop_index("ix_expenses_user_template_date", table_name="expenses")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_recurring_expenses_user_active", table_name="recurring_expenses")
    op.drop_table("recurring_expenses")
