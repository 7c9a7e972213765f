from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ReconciliationError, ValidationError
from models import DurationType, Expense, ExpenseType, RecurringExpense
from schemas import ExpenseIn, RecurringExpenseIn, RecurringExpenseUpdate
from services import ExpenseService, RecurringExpenseService


def _payload(**overrides) -> RecurringExpenseIn:
    values = dict(
        title="AWS Hosting",
        amount_original_cents=12000,
        currency_original="GBP",
        amount_gbp_cents=12000,
        category="Hosting & Infrastructure",
        start_date=date(2026, 2, 1),
        duration_type="indefinite",
    )
    values.update(overrides)
    return RecurringExpenseIn(**values)


def _update(**overrides) -> RecurringExpenseUpdate:
    values = _payload().model_dump(exclude={"start_date"})
    values.update(overrides)
    return RecurringExpenseUpdate(**values)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _rows(session: Session, template_id: int) -> list[Expense]:
    return session.scalars(
        select(Expense)
        .where(Expense.recurring_expense_id == template_id)
        .order_by(Expense.date)
    ).all()


def _materialize_year(session: Session, year: int, months=range(1, 13)) -> None:
    expenses = ExpenseService(session)
    for month in months:
        expenses.list_for_month(year=year, month=month)


def test_create_then_view_next_month():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(), today=date(2026, 2, 10)
        )

        rows = _rows(session, template.id)
        assert [r.date for r in rows] == [date(2026, 2, 1)]
        assert rows[0].type == ExpenseType.recurring

        march = ExpenseService(session).list_for_month(year=2026, month=3)
        assert [e.date for e in march.expenses] == [date(2026, 3, 1)]
        assert march.expenses[0].recurring_expense_id == template.id
        assert len(_rows(session, template.id)) == 2


def test_create_before_start_month_defers_first_row():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(start_date=date(2026, 5, 3)), today=date(2026, 2, 10)
        )
        assert template.is_active
        assert _rows(session, template.id) == []


def test_create_rejects_end_before_start():
    with Session(_engine()) as session:
        with pytest.raises(ValidationError):
            RecurringExpenseService(session).create(
                _payload(duration_type="until_date", end_date=date(2026, 1, 1)),
                today=date(2026, 2, 10),
            )
        assert session.scalars(select(RecurringExpense)).all() == []


def test_update_rewrites_current_month_and_drops_future_rows():
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(
            _payload(start_date=date(2026, 1, 1)), today=date(2026, 1, 5)
        )
        _materialize_year(session, 2026)
        assert len(_rows(session, template.id)) == 12

        service.update(
            template.id,
            _update(amount_original_cents=15000, amount_gbp_cents=15000),
            today=date(2026, 3, 10),
        )

        rows = _rows(session, template.id)
        assert [r.date.month for r in rows] == [1, 2, 3]
        assert [r.amount_original_cents for r in rows] == [12000, 12000, 15000]

        april = ExpenseService(session).list_for_month(year=2026, month=4)
        assert april.expenses[0].amount_original_cents == 15000
        assert april.expenses[0].amount_gbp_cents == 15000


def test_update_of_notes_only_still_drops_future_rows():
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(_payload(), today=date(2026, 2, 1))
        _materialize_year(session, 2026, months=range(2, 7))

        service.update(
            template.id, _update(notes="Production account"), today=date(2026, 2, 1)
        )

        rows = _rows(session, template.id)
        assert [r.date.month for r in rows] == [2]
        assert rows[0].notes == "Production account"


def test_update_can_shorten_duration():
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(_payload(), today=date(2026, 2, 1))

        service.update(
            template.id,
            _update(duration_type="months", duration_months=2),
            today=date(2026, 2, 1),
        )
        _materialize_year(session, 2026)

        assert [r.date.month for r in _rows(session, template.id)] == [2, 3]
        assert template.duration_type == DurationType.months
        assert template.start_date == date(2026, 2, 1)


def test_update_of_stopped_template_is_rejected():
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(_payload(), today=date(2026, 2, 1))
        service.stop(template.id, today=date(2026, 2, 1))

        with pytest.raises(ValidationError):
            service.update(template.id, _update(), today=date(2026, 2, 1))


def test_other_users_template_is_not_found():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session, user_id=2).create(
            _payload(), today=date(2026, 2, 1)
        )
        with pytest.raises(NotFoundError):
            RecurringExpenseService(session, user_id=1).stop(template.id)


def test_stop_keeps_history_and_removes_future_rows():
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(
            _payload(
                start_date=date(2026, 1, 1),
                duration_type="until_date",
                end_date=date(2027, 12, 1),
            ),
            today=date(2026, 1, 1),
        )
        _materialize_year(session, 2026)

        service.stop(template.id, today=date(2026, 3, 5))

        assert template.is_active is False
        assert [r.date.month for r in _rows(session, template.id)] == [1, 2, 3]

        may = ExpenseService(session).list_for_month(year=2026, month=5)
        assert may.created == []
        assert may.expenses == []


def test_deleting_one_row_stops_the_series():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(start_date=date(2026, 1, 1)), today=date(2026, 1, 1)
        )
        _materialize_year(session, 2026, months=range(1, 7))
        february = next(r for r in _rows(session, template.id) if r.date.month == 2)

        ExpenseService(session).delete(february.id, today=date(2026, 3, 1))

        session.refresh(template)
        assert template.is_active is False
        assert [r.date.month for r in _rows(session, template.id)] == [1, 3]


def test_deleting_one_off_leaves_templates_alone():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(), today=date(2026, 2, 1)
        )
        expenses = ExpenseService(session)
        laptop = expenses.create(
            ExpenseIn(
                title="Laptop",
                amount_original_cents=99900,
                amount_gbp_cents=99900,
                category="Equipment & Hardware",
                date=date(2026, 2, 14),
            )
        )
        assert laptop.type == ExpenseType.one_off

        expenses.delete(laptop.id, today=date(2026, 2, 1))

        assert template.is_active is True
        with pytest.raises(NotFoundError):
            expenses.get(laptop.id)


def test_editing_a_single_row_keeps_its_series_link():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(), today=date(2026, 2, 1)
        )
        row = _rows(session, template.id)[0]

        updated = ExpenseService(session).update(
            row.id,
            ExpenseIn(
                title="AWS Hosting (credits applied)",
                amount_original_cents=9000,
                amount_gbp_cents=9000,
                category="Hosting & Infrastructure",
                date=date(2026, 2, 3),
            ),
        )

        assert updated.type == ExpenseType.recurring
        assert updated.recurring_expense_id == template.id
        assert template.amount_original_cents == 12000


def test_recurring_row_cannot_move_to_another_month():
    with Session(_engine()) as session:
        template = RecurringExpenseService(session).create(
            _payload(), today=date(2026, 2, 1)
        )
        row = _rows(session, template.id)[0]
        moved = ExpenseIn(
            title="AWS Hosting",
            amount_original_cents=12000,
            amount_gbp_cents=12000,
            category="Hosting & Infrastructure",
            date=date(2026, 3, 5),
        )

        with pytest.raises(ValidationError):
            ExpenseService(session).update(row.id, moved)

        february = ExpenseService(session).list_for_month(year=2026, month=2)
        assert [e.id for e in february.expenses] == [row.id]
        assert len(_rows(session, template.id)) == 1


def test_failed_step_is_reported_and_rolled_back(monkeypatch):
    with Session(_engine()) as session:
        service = RecurringExpenseService(session)
        template = service.create(_payload(), today=date(2026, 2, 1))
        _materialize_year(session, 2026, months=range(2, 5))

        def broken_delete(self, template, current):
            raise OperationalError("DELETE", {}, Exception("database is locked"))

        monkeypatch.setattr(
            RecurringExpenseService, "_delete_future_instances", broken_delete
        )
        with pytest.raises(ReconciliationError) as excinfo:
            service.update(
                template.id,
                _update(amount_original_cents=15000, amount_gbp_cents=15000),
                today=date(2026, 2, 1),
            )

        assert excinfo.value.step == "future_instance_delete"
        reloaded = session.get(RecurringExpense, template.id)
        assert reloaded.amount_original_cents == 12000
        rows = _rows(session, template.id)
        assert len(rows) == 3
        assert all(r.amount_original_cents == 12000 for r in rows)
