from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import (
    ConflictError,
    NotFoundError,
    ReconciliationError,
    StorageError,
    ValidationError,
)
from models import Expense, ExpenseType, RecurringExpense
from periods import MonthPeriod, month_key
from recurrence import (
    MaterializationResult,
    RecurringMaterializer,
    build_instance,
    copy_financial_fields,
    is_template_active,
    local_today,
)
from schemas import ExpenseIn, RecurringExpenseIn, RecurringExpenseUpdate


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def _current_period(today: Optional[date]) -> MonthPeriod:
    return MonthPeriod.containing(today or local_today())


def _check_end_not_before_start(start_date: date, end_date: Optional[date]) -> None:
    if end_date is None:
        return
    if month_key(end_date.year, end_date.month) < month_key(
        start_date.year, start_date.month
    ):
        raise ValidationError("End date must not be before the start month")


@contextmanager
def reconciliation_step(session: Session, step: str) -> Iterator[None]:
    """Run one required write; on failure roll back the whole operation and
    report which step did not complete."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"reconciliation_failed: step={step} error={exc}")
        raise ReconciliationError(step) from exc


class RecurringExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, template_id: int) -> RecurringExpense:
        template = self.session.get(RecurringExpense, template_id)
        if not template or template.user_id != self.user_id:
            raise NotFoundError("Recurring expense not found")
        return template

    def list(self, include_stopped: bool = True) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .where(RecurringExpense.user_id == self.user_id)
            .order_by(RecurringExpense.start_date, RecurringExpense.id)
        )
        if not include_stopped:
            stmt = stmt.where(RecurringExpense.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(
        self, data: RecurringExpenseIn, today: Optional[date] = None
    ) -> RecurringExpense:
        _check_end_not_before_start(data.start_date, data.end_date)
        current = _current_period(today)

        template = RecurringExpense(
            user_id=self.user_id, is_active=True, **data.model_dump()
        )
        with reconciliation_step(self.session, "template_write"):
            self.session.add(template)
            self.session.flush()

        if is_template_active(template, current.year, current.month):
            with reconciliation_step(self.session, "current_instance_write"):
                self.session.add(build_instance(template, current.year, current.month))
                self.session.flush()

        with reconciliation_step(self.session, "commit"):
            self.session.commit()
        logger.info(
            f"recurring_expense_created: user_id={self.user_id} id={template.id} "
            f"start={template.start_date} duration={template.duration_type.value}"
        )
        return template

    def update(
        self,
        template_id: int,
        data: RecurringExpenseUpdate,
        today: Optional[date] = None,
    ) -> RecurringExpense:
        template = self.get(template_id)
        if not template.is_active:
            raise ValidationError("A stopped recurring expense cannot be edited")
        _check_end_not_before_start(template.start_date, data.end_date)
        current = _current_period(today)

        with reconciliation_step(self.session, "template_write"):
            for field, value in data.model_dump().items():
                setattr(template, field, value)
            self.session.flush()

        with reconciliation_step(self.session, "current_instance_write"):
            current_row = self.session.scalar(
                select(Expense).where(
                    Expense.user_id == self.user_id,
                    Expense.recurring_expense_id == template.id,
                    Expense.month_key == current.key,
                )
            )
            if current_row:
                copy_financial_fields(template, current_row)
                self.session.flush()

        # Even a notes-only edit drops future rows; the next read regenerates them.
        with reconciliation_step(self.session, "future_instance_delete"):
            removed = self._delete_future_instances(template, current)

        with reconciliation_step(self.session, "commit"):
            self.session.commit()
        logger.info(
            f"recurring_expense_updated: user_id={self.user_id} id={template.id} "
            f"period={current.year}-{current.month:02d} future_removed={removed}"
        )
        return template

    def stop(self, template_id: int, today: Optional[date] = None) -> RecurringExpense:
        template = self.get(template_id)
        current = _current_period(today)

        with reconciliation_step(self.session, "template_write"):
            template.is_active = False
            self.session.flush()

        with reconciliation_step(self.session, "future_instance_delete"):
            removed = self._delete_future_instances(template, current)

        with reconciliation_step(self.session, "commit"):
            self.session.commit()
        logger.info(
            f"recurring_expense_stopped: user_id={self.user_id} id={template.id} "
            f"period={current.year}-{current.month:02d} future_removed={removed}"
        )
        return template

    def _delete_future_instances(
        self, template: RecurringExpense, current: MonthPeriod
    ) -> int:
        result = self.session.execute(
            delete(Expense).where(
                Expense.user_id == self.user_id,
                Expense.recurring_expense_id == template.id,
                Expense.date >= current.next_start,
            )
        )
        return result.rowcount or 0


class ExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_for_month(self, year: int, month: int) -> MaterializationResult:
        return RecurringMaterializer(self.session, self.user_id).sync(year, month)

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFoundError("Expense not found")
        return expense

    def create(self, data: ExpenseIn) -> Expense:
        expense = Expense(
            user_id=self.user_id,
            type=ExpenseType.one_off,
            month_key=month_key(data.date.year, data.date.month),
            **data.model_dump(),
        )
        self.session.add(expense)
        self._commit()
        self.session.refresh(expense)
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        new_key = month_key(data.date.year, data.date.month)
        if expense.recurring_expense_id is not None and new_key != expense.month_key:
            raise ValidationError(
                "A recurring expense row cannot move to another month"
            )
        for field, value in data.model_dump().items():
            setattr(expense, field, value)
        expense.month_key = new_key
        self._commit()
        return expense

    def delete(self, expense_id: int, today: Optional[date] = None) -> None:
        """Delete one row. Deleting a row of a recurring series stops the
        whole series first; per-month skips are not supported."""
        expense = self.get(expense_id)
        template_id = expense.recurring_expense_id
        if template_id is not None:
            RecurringExpenseService(self.session, self.user_id).stop(
                template_id, today=today
            )
            logger.info(
                f"expense_delete_stopped_series: user_id={self.user_id} "
                f"expense_id={expense_id} template_id={template_id}"
            )

        remaining = self.session.get(Expense, expense_id)
        if remaining is None:
            return
        with reconciliation_step(self.session, "instance_delete"):
            self.session.delete(remaining)
            self.session.commit()

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "The recurring expense already has a row in that month"
            ) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("Failed to save expense") from exc
