import re
from datetime import date
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from models import AccountType, BudgetPeriod, RecurringInterval

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check_iso_date(value: str) -> str:
    # Ledger dates are compared as strings, so only zero-padded ISO is accepted.
    if not _ISO_DATE.match(value):
        raise ValueError("Date must be formatted as YYYY-MM-DD")
    date.fromisoformat(value)
    return value


IsoDate = Annotated[str, AfterValidator(_check_iso_date)]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    starting_balance_cents: Optional[int] = None
    starting_balance_date: Optional[IsoDate] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[AccountType] = None
    starting_balance_cents: Optional[int] = None
    starting_balance_date: Optional[IsoDate] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class SplitIn(BaseModel):
    participants: int


class TransactionIn(BaseModel):
    account_id: int
    date: IsoDate
    description: str = Field(..., max_length=200)
    amount_cents: int
    category_id: Optional[int] = None
    notes: Optional[str] = None
    is_recurring: bool = False
    is_transfer: bool = False
    split: Optional[SplitIn] = None
    split_parent_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    date: Optional[IsoDate] = None
    description: Optional[str] = Field(default=None, max_length=200)
    amount_cents: Optional[int] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    notes: Optional[str] = None
    is_transfer: Optional[bool] = None


class BulkTransactionRow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: IsoDate
    description: str = Field(..., max_length=200)
    amount_cents: int
    category_id: Optional[int] = None
    notes: Optional[str] = None
    is_transfer: bool = False


class ReimbursementIn(BaseModel):
    account_id: int
    date: IsoDate
    description: str = Field(..., max_length=200)
    amount_cents: int
    category_id: Optional[int] = None
    notes: Optional[str] = None


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int
    period: BudgetPeriod = BudgetPeriod.monthly


class BudgetUpdate(BaseModel):
    amount_cents: Optional[int] = None
    period: Optional[BudgetPeriod] = None


class GoalIn(BaseModel):
    name: str = Field(..., max_length=120)
    target_amount_cents: int
    current_amount_cents: int = 0
    target_date: Optional[IsoDate] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    target_amount_cents: Optional[int] = None
    current_amount_cents: Optional[int] = None
    target_date: Optional[IsoDate] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class GoalFundsIn(BaseModel):
    amount_cents: int


class RecurringTransactionIn(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    description: str = Field(..., max_length=200)
    amount_cents: int
    interval: RecurringInterval
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    next_run_date: IsoDate


class RecurringTransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    amount_cents: Optional[int] = None
    interval: Optional[RecurringInterval] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    next_run_date: Optional[IsoDate] = None
    active: Optional[bool] = None


class StatementCandidate(BaseModel):
    """One row produced by statement extraction, before review."""

    model_config = ConfigDict(extra="ignore")

    date: IsoDate
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    category: Optional[str] = Field(default=None, max_length=100)


class StatementRowIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: IsoDate
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    category_id: Optional[int] = None


class StatementCommitIn(BaseModel):
    account_id: int
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field(default="application/pdf", max_length=100)
    transactions: list[StatementRowIn]
    skip_duplicates: bool = False


class BulkDeleteIn(BaseModel):
    ids: list[int]


class BulkCategoryIn(BaseModel):
    ids: list[int]
    category_id: Optional[int] = None


class BulkCreateIn(BaseModel):
    account_id: int
    transactions: list[BulkTransactionRow]


class TransferDetectIn(BaseModel):
    account_id: int
    ids: list[int]


class SplitParentIn(BaseModel):
    parent_id: Optional[int] = None


class StatementPreviewIn(BaseModel):
    account_id: int
    transactions: list[StatementCandidate]


class StatementProcessIn(BaseModel):
    account_id: int
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field(default="application/pdf", max_length=100)
    transactions: list[StatementCandidate]
