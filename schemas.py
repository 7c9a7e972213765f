import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from rapidfuzz.distance import Levenshtein

from models import DurationType, ExpenseCategory, ExpenseType


def resolve_category(value: object) -> ExpenseCategory:
    """Match a category by value or member name, case-insensitively, falling
    back to the single label within one edit of the input."""
    if isinstance(value, ExpenseCategory):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("Category is required")
    lowered = raw.lower()
    for member in ExpenseCategory:
        if lowered in (member.value.lower(), member.name.lower()):
            return member

    best_distance: Optional[int] = None
    best: list[ExpenseCategory] = []
    for member in ExpenseCategory:
        dist = int(Levenshtein.distance(lowered, member.value.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [member]
        elif dist == best_distance:
            best.append(member)

    if best_distance is not None and best_distance <= 1:
        if len(best) > 1:
            raise ValueError(f"Ambiguous category: {raw}")
        return best[0]
    raise ValueError(f"Unknown category: {raw}")


class ExpenseFields(BaseModel):
    title: str = Field(..., max_length=200)
    amount_original_cents: int = Field(..., gt=0)
    currency_original: str = Field(default="GBP", pattern=r"^[A-Za-z]{3}$")
    amount_gbp_cents: int = Field(..., ge=0)
    exchange_rate_micros: int = Field(default=1_000_000, gt=0)
    conversion_date: Optional[datetime] = None
    category: ExpenseCategory
    notes: Optional[str] = None

    @field_validator("currency_original")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("category", mode="before")
    @classmethod
    def _match_category(cls, value: object) -> ExpenseCategory:
        return resolve_category(value)


class ExpenseIn(ExpenseFields):
    date: dt.date


class RecurringExpenseUpdate(ExpenseFields):
    duration_type: DurationType = DurationType.indefinite
    duration_months: Optional[int] = Field(default=None, gt=0)
    end_date: Optional[dt.date] = None

    @field_validator("end_date")
    @classmethod
    def _first_of_month(cls, value: Optional[dt.date]) -> Optional[dt.date]:
        if value is None:
            return None
        return value.replace(day=1)

    @model_validator(mode="after")
    def _check_duration_fields(self):
        if self.duration_type == DurationType.months:
            if self.duration_months is None:
                raise ValueError("duration_months is required for a fixed duration")
            if self.end_date is not None:
                raise ValueError("end_date is only allowed with until_date")
        elif self.duration_type == DurationType.until_date:
            if self.end_date is None:
                raise ValueError("end_date is required for until_date")
            if self.duration_months is not None:
                raise ValueError("duration_months is only allowed with months")
        elif self.duration_months is not None or self.end_date is not None:
            raise ValueError("An indefinite recurring expense has no end")
        return self


class RecurringExpenseIn(RecurringExpenseUpdate):
    start_date: dt.date

    @field_validator("start_date")
    @classmethod
    def _start_day_in_every_month(cls, value: dt.date) -> dt.date:
        if not 1 <= value.day <= 28:
            raise ValueError("Start day must be between 1 and 28")
        return value


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    amount_original_cents: int
    currency_original: str
    amount_gbp_cents: int
    exchange_rate_micros: int
    conversion_date: Optional[datetime]
    category: ExpenseCategory
    notes: Optional[str]
    date: dt.date
    type: ExpenseType
    recurring_expense_id: Optional[int]


class RecurringExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    amount_original_cents: int
    currency_original: str
    amount_gbp_cents: int
    exchange_rate_micros: int
    conversion_date: Optional[datetime]
    category: ExpenseCategory
    notes: Optional[str]
    start_date: date
    duration_type: DurationType
    duration_months: Optional[int]
    end_date: Optional[date]
    is_active: bool
