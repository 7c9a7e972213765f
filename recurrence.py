import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ConflictError, StorageError
from models import DurationType, Expense, ExpenseType, RecurringExpense
from periods import MonthPeriod, days_in_month, month_key


logger = logging.getLogger(__name__)

# Copied from the template onto every instance; never joined at read time.
FINANCIAL_FIELDS = (
    "title",
    "amount_original_cents",
    "currency_original",
    "amount_gbp_cents",
    "exchange_rate_micros",
    "conversion_date",
    "category",
    "notes",
)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def template_end_key(template: RecurringExpense) -> Optional[int]:
    """Month key of the last active month, or None when the duration
    fields do not describe one."""
    start = template.start_date
    if template.duration_type == DurationType.months:
        if not template.duration_months or template.duration_months < 1:
            return None
        return month_key(start.year, start.month) + template.duration_months - 1
    if template.duration_type == DurationType.until_date:
        if template.end_date is None:
            return None
        return month_key(template.end_date.year, template.end_date.month)
    return None


def is_template_active(template: RecurringExpense, year: int, month: int) -> bool:
    if not template.is_active:
        return False
    if template.start_date is None:
        logger.warning(f"recurring_expense_malformed: id={template.id} no start_date")
        return False

    target = month_key(year, month)
    if target < month_key(template.start_date.year, template.start_date.month):
        return False
    if template.duration_type == DurationType.indefinite:
        return True

    end = template_end_key(template)
    if end is None:
        logger.warning(
            f"recurring_expense_malformed: id={template.id} "
            f"duration_type={template.duration_type}"
        )
        return False
    return target <= end


def instance_date(template: RecurringExpense, year: int, month: int) -> date:
    day = min(template.start_date.day, days_in_month(year, month))
    return date(year, month, day)


def copy_financial_fields(template: RecurringExpense, expense: Expense) -> None:
    for name in FINANCIAL_FIELDS:
        setattr(expense, name, getattr(template, name))


def build_instance(template: RecurringExpense, year: int, month: int) -> Expense:
    expense = Expense(
        user_id=template.user_id,
        date=instance_date(template, year, month),
        month_key=month_key(year, month),
        type=ExpenseType.recurring,
        recurring_expense_id=template.id,
    )
    copy_financial_fields(template, expense)
    return expense


@dataclass
class MaterializationFailure:
    recurring_expense_id: int
    error: str


@dataclass
class MaterializationResult:
    period: MonthPeriod
    expenses: list[Expense]
    created: list[Expense] = field(default_factory=list)
    failures: list[MaterializationFailure] = field(default_factory=list)


class RecurringMaterializer:
    """Ensures each active template has exactly one expense row in a month."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def sync(self, year: int, month: int) -> MaterializationResult:
        period = MonthPeriod(year, month)
        templates = self._load_active_templates()
        due = [t for t in templates if is_template_active(t, year, month)]
        materialized = self._load_materialized_ids(period)
        pending = [
            build_instance(t, year, month) for t in due if t.id not in materialized
        ]

        created: list[Expense] = []
        failures: list[MaterializationFailure] = []
        for expense in pending:
            template_id = expense.recurring_expense_id
            try:
                self._insert(expense, period)
            except ConflictError:
                logger.info(
                    f"materialize: user_id={self.user_id} template_id={template_id} "
                    f"period={year}-{month:02d} already materialized"
                )
            except StorageError as exc:
                logger.error(
                    f"materialize: user_id={self.user_id} template_id={template_id} "
                    f"period={year}-{month:02d} insert failed: {exc.__cause__}"
                )
                failures.append(MaterializationFailure(template_id, str(exc)))
            else:
                created.append(expense)

        if created:
            logger.info(
                f"materialize: user_id={self.user_id} period={year}-{month:02d} "
                f"created={len(created)}"
            )
        return MaterializationResult(
            period=period,
            expenses=self.list_month(period),
            created=created,
            failures=failures,
        )

    def list_month(self, period: MonthPeriod) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.date >= period.start,
                Expense.date < period.next_start,
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to load expenses") from exc

    def _load_active_templates(self) -> list[RecurringExpense]:
        stmt = select(RecurringExpense).where(
            RecurringExpense.user_id == self.user_id,
            RecurringExpense.is_active.is_(True),
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to load recurring expenses") from exc

    def _load_materialized_ids(self, period: MonthPeriod) -> set[int]:
        stmt = select(Expense.recurring_expense_id).where(
            Expense.user_id == self.user_id,
            Expense.recurring_expense_id.is_not(None),
            Expense.month_key == period.key,
        )
        try:
            return set(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to load expenses") from exc

    def _insert(self, expense: Expense, period: MonthPeriod) -> None:
        template_id = expense.recurring_expense_id
        self.session.add(expense)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if self._exists(template_id, period):
                raise ConflictError(
                    f"Recurring expense {template_id} already has a row for "
                    f"{period.year}-{period.month:02d}"
                ) from exc
            raise StorageError("Failed to insert recurring expense row") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to insert recurring expense row") from exc

    def _exists(self, template_id: int, period: MonthPeriod) -> bool:
        stmt = (
            select(Expense.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.recurring_expense_id == template_id,
                Expense.month_key == period.key,
            )
            .limit(1)
        )
        try:
            return self.session.execute(stmt).scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to load expenses") from exc
