import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, require_csrf_token
from database import SessionLocal
from errors import (
    ConflictError,
    NotFoundError,
    ReconciliationError,
    StorageError,
    ValidationError,
)
from periods import MonthPeriod, resolve_month
from recurrence import local_today
from schemas import (
    ExpenseIn,
    ExpenseOut,
    RecurringExpenseIn,
    RecurringExpenseOut,
    RecurringExpenseUpdate,
)
from services import ExpenseService, RecurringExpenseService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def viewed_month(
    month: Optional[int] = Query(default=None, ge=1, le=12),
    year: Optional[int] = Query(default=None, ge=1970, le=3000),
) -> MonthPeriod:
    try:
        return resolve_month(month, year, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    if isinstance(exc, ReconciliationError):
        logger.error(f"request_failed: path={request.url.path} step={exc.step}")
        return JSONResponse(
            status_code=500, content={"detail": str(exc), "failed_step": exc.step}
        )
    logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/csrf")
def csrf_token():
    return {"csrf_token": generate_csrf_token()}


@app.get("/expenses")
def list_expenses(
    period: MonthPeriod = Depends(viewed_month), db: Session = Depends(get_db)
):
    result = ExpenseService(db).list_for_month(period.year, period.month)
    return {
        "year": period.year,
        "month": period.month,
        "expenses": [ExpenseOut.model_validate(e) for e in result.expenses],
        "materialization_failures": [
            {"recurring_expense_id": f.recurring_expense_id, "error": f.error}
            for f in result.failures
        ],
    }


@app.post(
    "/expenses",
    status_code=201,
    response_model=ExpenseOut,
    dependencies=[Depends(require_csrf_token)],
)
def create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    return ExpenseService(db).create(data)


@app.put(
    "/expenses/{expense_id}",
    response_model=ExpenseOut,
    dependencies=[Depends(require_csrf_token)],
)
def update_expense(expense_id: int, data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        return ExpenseService(db).update(expense_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.delete("/expenses/{expense_id}", dependencies=[Depends(require_csrf_token)])
def delete_expense(
    expense_id: int,
    period: MonthPeriod = Depends(viewed_month),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db).delete(expense_id, today=period.start)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/recurring", response_model=list[RecurringExpenseOut])
def list_recurring(include_stopped: bool = True, db: Session = Depends(get_db)):
    return RecurringExpenseService(db).list(include_stopped=include_stopped)


@app.get("/recurring/{template_id}", response_model=RecurringExpenseOut)
def get_recurring(template_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringExpenseService(db).get(template_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post(
    "/recurring",
    status_code=201,
    response_model=RecurringExpenseOut,
    dependencies=[Depends(require_csrf_token)],
)
def create_recurring(
    data: RecurringExpenseIn,
    period: MonthPeriod = Depends(viewed_month),
    db: Session = Depends(get_db),
):
    try:
        return RecurringExpenseService(db).create(data, today=period.start)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put(
    "/recurring/{template_id}",
    response_model=RecurringExpenseOut,
    dependencies=[Depends(require_csrf_token)],
)
def update_recurring(
    template_id: int,
    data: RecurringExpenseUpdate,
    period: MonthPeriod = Depends(viewed_month),
    db: Session = Depends(get_db),
):
    try:
        return RecurringExpenseService(db).update(
            template_id, data, today=period.start
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post(
    "/recurring/{template_id}/stop",
    response_model=RecurringExpenseOut,
    dependencies=[Depends(require_csrf_token)],
)
def stop_recurring(
    template_id: int,
    period: MonthPeriod = Depends(viewed_month),
    db: Session = Depends(get_db),
):
    try:
        return RecurringExpenseService(db).stop(template_id, today=period.start)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
