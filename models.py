from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseCategory(str, Enum):
    hosting = "Hosting & Infrastructure"
    software = "Software Subscriptions"
    marketing = "Marketing & Ads"
    equipment = "Equipment & Hardware"
    contractors = "Contractor Payments"
    app_store_fees = "App Store Fees"
    office_admin = "Office & Admin"
    other = "Other"


EXPENSE_CATEGORY_ENUM = SAEnum(
    ExpenseCategory,
    name="expensecategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class ExpenseType(str, Enum):
    one_off = "one_off"
    recurring = "recurring"


class DurationType(str, Enum):
    indefinite = "indefinite"
    months = "months"
    until_date = "until_date"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class RecurringExpense(Base, TimestampMixin):
    """Template that generates one expense row per active month."""

    __tablename__ = "recurring_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_original_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_original: Mapped[str] = mapped_column(
        String(3), nullable=False, default="GBP"
    )
    amount_gbp_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange_rate_micros: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1_000_000
    )
    conversion_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    category: Mapped[ExpenseCategory] = mapped_column(
        EXPENSE_CATEGORY_ENUM, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_type: Mapped[DurationType] = mapped_column(
        SAEnum(DurationType), nullable=False, default=DurationType.indefinite
    )
    duration_months: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="recurring_expense"
    )

    __table_args__ = (
        CheckConstraint(
            "amount_original_cents > 0", name="ck_recurring_amount_positive"
        ),
        CheckConstraint(
            "duration_months IS NULL OR duration_months > 0",
            name="ck_recurring_duration_months_positive",
        ),
        CheckConstraint(
            "CAST(strftime('%d', start_date) AS INTEGER) BETWEEN 1 AND 28",
            name="ck_recurring_start_day",
        ),
        CheckConstraint(
            "(duration_type = 'indefinite'"
            " AND duration_months IS NULL AND end_date IS NULL)"
            " OR (duration_type = 'months'"
            " AND duration_months IS NOT NULL AND end_date IS NULL)"
            " OR (duration_type = 'until_date'"
            " AND end_date IS NOT NULL AND duration_months IS NULL)",
            name="ck_recurring_duration_fields",
        ),
        Index("ix_recurring_expenses_user_active", "user_id", "is_active"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_original_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_original: Mapped[str] = mapped_column(
        String(3), nullable=False, default="GBP"
    )
    amount_gbp_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange_rate_micros: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1_000_000
    )
    conversion_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    category: Mapped[ExpenseCategory] = mapped_column(
        EXPENSE_CATEGORY_ENUM, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # year * 12 + month of `date`
    month_key: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[ExpenseType] = mapped_column(
        SAEnum(ExpenseType), nullable=False, default=ExpenseType.one_off
    )
    recurring_expense_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_expenses.id")
    )

    recurring_expense: Mapped[Optional["RecurringExpense"]] = relationship(
        "RecurringExpense", back_populates="expenses"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "recurring_expense_id",
            "month_key",
            name="uq_expense_template_month",
        ),
        Index("ix_expenses_user_date", "user_id", "date"),
        Index(
            "ix_expenses_user_template_date",
            "user_id",
            "recurring_expense_id",
            "date",
        ),
        CheckConstraint("amount_original_cents > 0", name="ck_expense_amount_positive"),
    )
